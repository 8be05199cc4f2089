from typing import Optional


class PersistenceError(RuntimeError):
    """The backing store rejected or failed a write."""


class ExternalServiceError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


class RateLimitError(ExternalServiceError):
    pass


class ParseError(ExternalServiceError):
    pass


class TurnInProgressError(RuntimeError):
    pass
