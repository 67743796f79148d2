"""Exception hierarchy for the batching engine."""

from typing import Optional


class EngineError(Exception):
    """Base class for engine failures."""


class StoreUnavailableError(EngineError):
    """The state store could not be reached. Callers must fail closed."""


class InferenceError(EngineError):
    """The completion call failed or returned no usable text."""


class GatewayError(EngineError):
    """Sending through the messaging gateway failed."""


class GatewayHTTPError(GatewayError):
    def __init__(self, status_code: int, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Gateway returned HTTP {status_code}: {(body or '')[:200]}")


class GatewayNetworkError(GatewayError):
    pass


class WebhookAuthError(EngineError):
    def __init__(self, message: str, status_code: int = 401):
        self.status_code = status_code
        super().__init__(message)
