"""Observability helpers (logging setup, Sentry init & common scrubbing).

Centralises logging and Sentry initialisation for the API and the worker
so configuration does not drift. Sentry calls are no-ops when no DSN is
configured.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.dramatiq import DramatiqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from receipt_extraction.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
	"""Install a root handler once; ``LOG_LEVEL`` overrides the default INFO."""
	logging.basicConfig(level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(), format=LOG_FORMAT)


def _sentry_enabled() -> bool:
	return bool(settings.SENTRY_DSN)


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):  # type: ignore[override]
	"""Scrub obvious secrets before sending to Sentry.

	- Drop Authorization & Cookie headers (the bearer value is the user id)
	- Remove request data/body, which may hold raw receipt images
	"""
	try:
		req = event.get("request") or {}
		headers = req.get("headers") or {}
		for k in list(headers.keys()):
			if k.lower() in ("authorization", "cookie", "set-cookie", "x-api-key"):
				headers.pop(k, None)
		req.pop("data", None)
		event["request"] = req
	except Exception:  # best effort
		pass
	return event


def init_sentry(service: str) -> bool:
	"""Initialise Sentry once for a given process.

	Returns True if Sentry was initialised; False otherwise.
	"""
	if not _sentry_enabled():
		return False
	if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
		return True
	integrations: list[Any] = [SqlalchemyIntegration()]
	integrations.append(DramatiqIntegration() if service == "worker" else FastApiIntegration())
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		integrations=integrations,
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		before_send=_before_send,
	)
	sentry_sdk.set_tag("service", service)
	init_sentry._done = True  # type: ignore[attr-defined]
	return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
	"""Best-effort: set tags on the current Sentry scope (strings only)."""
	if not _sentry_enabled():
		return
	for k, v in (tags or {}).items():
		sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: add a breadcrumb for important lifecycle steps."""
	if not _sentry_enabled():
		return
	sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: record a counter increment as a ``metric`` breadcrumb.

	Tag values are coerced to short strings to avoid large payloads.
	"""
	if not _sentry_enabled():
		return
	safe_tags = {str(k): str(v)[:64] for k, v in (tags or {}).items()}
	sentry_sdk.add_breadcrumb(category="metric", message=name, data={"value": value, **safe_tags})


def sentry_capture(exc: BaseException) -> None:
	if _sentry_enabled():
		sentry_sdk.capture_exception(exc)


__all__ = [
	"configure_logging",
	"init_sentry",
	"sentry_set_tags",
	"sentry_breadcrumb",
	"sentry_metric_inc",
	"sentry_capture",
]
