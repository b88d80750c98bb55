"""Error taxonomy shared by indexing, search and the HTTP endpoint."""

from typing import Any


class SiteScribeError(Exception):
    """Base error carrying a machine-readable code and an HTTP status."""

    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str, code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status={self.status}, message={self.message!r})"


class ConfigMissingError(SiteScribeError, ValueError):
    """Configuration is invalid or incomplete. Raised before any I/O."""

    code = "CONFIG_MISSING"
    status = 400


class EmbeddingModelMismatchError(SiteScribeError):
    """Scope was indexed with a different embedding model."""

    code = "EMBEDDING_MODEL_MISMATCH"
    status = 409


class RouteMappingFailedError(SiteScribeError):
    """A URL could only be mapped best-effort while strict mapping is on."""

    code = "ROUTE_MAPPING_FAILED"
    status = 400


class VectorBackendUnavailableError(SiteScribeError):
    """Embeddings or the vector store returned unusable data."""

    code = "VECTOR_BACKEND_UNAVAILABLE"
    status = 503


class RateLimitedError(SiteScribeError):
    code = "RATE_LIMITED"
    status = 429


class InvalidRequestError(SiteScribeError):
    """Malformed query input. Never retried."""

    code = "INVALID_REQUEST"
    status = 400


class InternalError(SiteScribeError):
    code = "INTERNAL_ERROR"
    status = 500


def to_error_payload(error: BaseException) -> dict[str, Any]:
    """Convert any exception into the JSON error body returned by the API.

    Args:
        error: Exception raised while handling a request

    Returns:
        Dict of the form {"error": {"code": ..., "message": ...}}
    """
    if isinstance(error, SiteScribeError):
        return {"error": {"code": error.code, "message": error.message}}

    return {"error": {"code": InternalError.code, "message": str(error) or "Unknown error"}}
