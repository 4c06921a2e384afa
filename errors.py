"""Typed conversion errors shared by the render pipeline and the HTTP layer."""

from typing import Any, Dict, Optional


class ConversionError(Exception):
    """Base class for every failure the conversion pipeline surfaces."""

    category = "conversion_error"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "message": self.message, "detail": self.detail}


class InputValidationError(ConversionError):
    """Request fields are missing, malformed, or exceed size limits."""

    category = "invalid_input"


class CssFetchError(ConversionError):
    """The stylesheet could not be fetched and no usable cached copy exists."""

    category = "css_fetch_error"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None, *, reason: str = "network"):
        detail = dict(detail or {})
        detail.setdefault("reason", reason)
        super().__init__(message, detail)
        self.reason = reason


class UnknownEngineError(ConversionError):
    category = "unknown_engine"


class EngineUnavailableError(ConversionError):
    category = "engine_unavailable"


class NoEnginesAvailableError(ConversionError):
    category = "no_engines_available"


class RenderFailedError(ConversionError):
    """Every candidate engine failed; detail carries one entry per attempt."""

    category = "render_failed"


class DeadlineExceededError(ConversionError):
    category = "deadline_exceeded"


class InternalInvariantError(ConversionError):
    category = "internal_error"


CONVERSION_ERRORS = (
    InputValidationError,
    CssFetchError,
    UnknownEngineError,
    EngineUnavailableError,
    NoEnginesAvailableError,
    RenderFailedError,
    DeadlineExceededError,
    InternalInvariantError,
)
