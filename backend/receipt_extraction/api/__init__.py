"""API package.

This exposes router modules to simplify test imports like:
	from receipt_extraction.api.routes.extractions import router
"""

__all__ = [
	"routes",
]
