"""
Gateway error taxonomy.

Auth and validation errors are fatal to the single request or connection
that raised them, never to the session. Upstream and extraction errors are
recovered locally and surfaced as structured events.
"""

from __future__ import annotations

from typing import Any, Optional


class GatewayError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class AuthError(GatewayError):
    """Missing, invalid or expired session token."""

    def __init__(self, message: str, code: str = "INVALID_TOKEN"):
        super().__init__(code, message)


class NotFoundError(GatewayError):
    def __init__(self, message: str, code: str = "NOT_FOUND", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class ValidationError(GatewayError):
    """Malformed client payload; the client must fix it and retry."""

    def __init__(self, message: str, code: str = "BAD_REQUEST", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class UpstreamError(GatewayError):
    """LLM provider or persistence backend failure."""

    def __init__(self, message: str, code: str = "UPSTREAM_ERROR", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class ExtractionError(GatewayError):
    """Raised inside the extraction engine only; never escapes ``extract``."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("EXTRACTION_FAILED", message, details)
