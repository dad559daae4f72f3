"""Receipt extraction service.

Users upload receipt photos through the FastAPI app in
``receipt_extraction.api``. Extraction runs in Dramatiq workers
(``receipt_extraction.worker``) that ask a vision model to read each
receipt, store the structured result and push live updates back to the
user's WebSocket connections.

To run the API locally you can execute:

```bash
uvicorn receipt_extraction.api.main:app --reload
```

The default configuration uses a local SQLite database stored in
``receipts.db``. You can override configuration values using
environment variables or a ``.env`` file at the project root.
"""

__all__: list[str] = []
