"""Gateway error taxonomy mapped to HTTP responses in main.py."""

from typing import Optional


class GatewayError(Exception):
    """Base class for errors rendered as ``{"error": message}``."""

    status_code = 500

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(GatewayError):
    status_code = 400


class NotFoundError(GatewayError):
    status_code = 404

    def __init__(self, message: str = "File not found", **kwargs):
        super().__init__(message, **kwargs)


class ConflictError(GatewayError):
    status_code = 409


class RepositoryUnavailable(GatewayError):
    status_code = 503

    def __init__(self, message: str = "Database not configured", **kwargs):
        super().__init__(message, **kwargs)


class FeatureDisabled(GatewayError):
    status_code = 503


class UpstreamError(GatewayError):
    """Object store or media tool failure; detail is only exposed in development."""

    status_code = 500


class ProcessingFailure(Exception):
    """Background processing failure recorded on the owning entity, never raised to clients."""


class ServiceBusy(GatewayError):
    status_code = 503
