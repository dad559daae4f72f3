"""Vision model clients used to read receipts.

Two providers are supported, selected via ``settings.INFERENCE_PROVIDER``:

* ``ollama`` (default) posts to a local Ollama server's ``/api/chat``
  with the image attached as base64.
* ``openai`` sends the image as a data URL through Chat Completions.

Both return the same envelope, ``{"message": {"content": <text>}}``, so
the response parser does not care which model answered. Any transport
or API failure is raised as ``InferenceError``.

Diagnostic logging can be enabled by setting env var INFERENCE_DEBUG=1.
"""

from __future__ import annotations

import base64
import logging
import os
from typing import Any, Optional, Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError

from receipt_extraction.core.config import settings
from receipt_extraction.core.errors import InferenceError
from receipt_extraction.utils.image_processing import prepare_for_inference, sniff_image_format
from receipt_extraction.utils.prompts import get_extraction_prompt

logger = logging.getLogger(__name__)

ModelEnvelope = dict[str, Any]


class InferenceClient(Protocol):
    async def extract_receipt(self, image: bytes) -> ModelEnvelope: ...


def _image_to_base64(data: bytes) -> str:
    """Encode raw image bytes as a base64 string."""
    return base64.b64encode(data).decode("utf-8")


_MIME_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}


def _image_data_url(data: bytes) -> str:
    """Build a ``data:`` URL whose media type matches the image bytes."""
    mime = _MIME_TYPES.get(sniff_image_format(data) or "", "image/jpeg")
    return f"data:{mime};base64,{_image_to_base64(data)}"


class OllamaInferenceClient:
    """Client for Ollama's chat endpoint."""

    def __init__(
        self,
        host: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.host = (host or settings.OLLAMA_HOST).rstrip("/")
        self.model = model or settings.OLLAMA_MODEL
        self.temperature = settings.INFERENCE_TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or settings.INFERENCE_TIMEOUT_SECONDS
        self._transport = transport
        self.debug = os.getenv("INFERENCE_DEBUG", "0").lower() in {"1", "true", "yes"}

    def build_payload(self, image_b64: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": get_extraction_prompt(),
                    "images": [image_b64],
                }
            ],
            "stream": False,
            "options": {"temperature": self.temperature},
        }

    async def extract_receipt(self, image: bytes) -> ModelEnvelope:
        processed = prepare_for_inference(image, settings.INFERENCE_MAX_IMAGE_SIDE)
        payload = self.build_payload(_image_to_base64(processed))
        if self.debug:
            logger.info("[inference:ollama] model=%s bytes=%d", self.model, len(processed))
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.host}/api/chat", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as exc:
            logger.error("Ollama extraction timed out after %ss", self.timeout)
            raise InferenceError(f"Ollama request timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.error("Ollama extraction failed: %s", exc)
            raise InferenceError(f"Ollama request failed: {exc}") from exc
        except ValueError as exc:
            raise InferenceError("Ollama returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise InferenceError("Ollama returned an unexpected body")
        return data


class OpenAIInferenceClient:
    """Client for an OpenAI vision-capable chat model."""

    def __init__(
        self,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model or settings.OPENAI_MODEL
        self.temperature = settings.INFERENCE_TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or settings.INFERENCE_TIMEOUT_SECONDS
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY or os.getenv("OPENAI_API_KEY"),
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    async def extract_receipt(self, image: bytes) -> ModelEnvelope:
        processed = prepare_for_inference(image, settings.INFERENCE_MAX_IMAGE_SIDE)
        data_url = _image_data_url(processed)
        try:
            chat_resp = await self._get_client().chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": get_extraction_prompt()},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
            )
        except OpenAIError as exc:
            logger.error("OpenAI extraction failed: %s", exc)
            raise InferenceError(f"OpenAI request failed: {exc}") from exc
        try:
            content = chat_resp.choices[0].message.content or ""
        except (AttributeError, IndexError) as exc:
            raise InferenceError("OpenAI returned no choices") from exc
        return {"model": self.model, "message": {"role": "assistant", "content": content}}


def build_inference_client(provider: Optional[str] = None) -> InferenceClient:
    name = (provider or settings.INFERENCE_PROVIDER or "ollama").lower()
    if name == "ollama":
        return OllamaInferenceClient()
    if name == "openai":
        return OpenAIInferenceClient()
    raise ValueError(f"Unknown inference provider: {name}")
