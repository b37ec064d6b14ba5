"""Exception taxonomy shared by every workflow."""


class EngineError(Exception):
    """Base class for all engine errors."""


class ProviderError(EngineError):
    """Non-2xx response (or transport failure) from an LLM backend. Retryable."""

    def __init__(self, provider: str, status_code: int | None, body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        status = status_code if status_code is not None else "transport"
        super().__init__(f"{provider} API error: {status} - {body}")


class ParseError(EngineError):
    """LLM output could not be coerced to JSON by any recovery strategy."""

    def __init__(self, preview: str = ""):
        self.preview = preview
        super().__init__("Failed to parse JSON from LLM response")


class AccessError(EngineError):
    """Role/token validation failed. Surfaced as HTTP 403, never retried."""


class StreamTransportError(EngineError):
    """The event stream could not be written to."""


class RunCancelledError(EngineError):
    """The caller went away; remaining work was abandoned."""


class UnitFailedError(EngineError):
    """Every attempt for a single work unit failed."""

    def __init__(self, unit_id: str, attempts: int, last_error: Exception):
        self.unit_id = unit_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(str(last_error))
