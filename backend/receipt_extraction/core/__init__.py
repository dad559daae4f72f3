"""Core infrastructure: settings, database, errors, observability, tasks.

Exports configuration settings to simplify import paths
(e.g. `from receipt_extraction.core import settings`).
"""

from .config import settings  # noqa: F401
