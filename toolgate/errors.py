"""
Error taxonomy for the gateway.

Every error that can reach a client derives from ``GatewayError`` and knows
its HTTP status and JSON body. The router converts them at the route boundary,
so nothing but ``ConfigurationError`` at startup ever stops the process.
"""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class ConfigurationError(GatewayError):
    """Invalid or missing settings. Fatal at startup."""


# -------------------------------------------------------------
# Authentication
# -------------------------------------------------------------
class AuthError(GatewayError):
    title = "Unauthorized"

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.title, "message": self.message}


class AuthMissingError(AuthError):
    status_code = 401
    title = "Unauthorized"


class AuthForbiddenError(AuthError):
    status_code = 403
    title = "Forbidden"


class AuthUnavailableError(AuthError):
    status_code = 503
    title = "Service Unavailable"


# -------------------------------------------------------------
# Upstream
# -------------------------------------------------------------
class UpstreamError(GatewayError):
    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message, status_code)
        self.upstream_status = status_code
        self.body = body

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": "upstream_error",
                "upstream_status": self.upstream_status,
                "upstream_body": self.body,
            }
        }


class SynthesisError(GatewayError):
    """The model listing needed for synthetic metadata could not be fetched."""
    status_code = 500

    def to_payload(self) -> Dict[str, Any]:
        return {"error": f"Failed to get model information: {self.message}"}


class ModelNotFoundError(SynthesisError):
    status_code = 404

    def __init__(self, model: str):
        super().__init__(f"Model '{model}' not found")
        self.model = model

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


# -------------------------------------------------------------
# Streaming bounds
# -------------------------------------------------------------
class StreamError(GatewayError):
    error_type = "stream_error"

    def to_payload(self) -> Dict[str, Any]:
        return {"error": {"message": self.message, "type": self.error_type}}


class StreamOverflowError(StreamError):
    status_code = 502
    error_type = "stream_overflow"


class StreamTimeoutError(StreamError):
    status_code = 504
    error_type = "stream_timeout"
