from __future__ import annotations


MAX_CONTENT_LENGTH = 100 * 1000 * 1000


class ConfigError(RuntimeError):
    """Raised at startup when required settings are absent."""


class EngineError(RuntimeError):
    """Raised by the rule engine when a flow cannot be evaluated."""


class FlowError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(FlowError):
    status_code = 404


class InvalidProfile(FlowError):
    status_code = 400


class FetchFailed(FlowError):
    status_code = 500


class ExceededContentLength(FetchFailed):
    def __init__(self, limit: int = MAX_CONTENT_LENGTH) -> None:
        super().__init__(f"exceeded max. content length of {limit}")
        self.limit = limit


class ParseFailed(FlowError):
    status_code = 417


class ExecutionFailed(FlowError):
    status_code = 500


class Unauthenticated(FlowError):
    status_code = 401


class Unauthorized(FlowError):
    status_code = 403


class PersistenceFailed(FlowError):
    status_code = 500


class FlowIDConflict(PersistenceFailed):
    status_code = 409
