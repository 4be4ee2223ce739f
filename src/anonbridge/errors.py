from __future__ import annotations


class BridgeError(Exception):
    """Base error carrying a stable code and a message that is safe to show callers."""

    code = "error"
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code.replace("_", " ")
        super().__init__(self.message)


class ValidationError(BridgeError):
    code = "invalid_request"


class InvalidParticipant(BridgeError):
    code = "invalid_participant"


class NotFound(BridgeError):
    code = "not_found"


class Forbidden(BridgeError):
    code = "forbidden"


class ThreadAlreadyExists(BridgeError):
    """Dedup signal: the pair already has a live thread, use ``existing_id``."""

    code = "thread_exists"

    def __init__(self, existing_id: str) -> None:
        self.existing_id = existing_id
        super().__init__("a thread already exists for this pair")


class ThreadArchived(BridgeError):
    code = "thread_archived"


class HandleSpaceExhausted(BridgeError):
    code = "handle_space_exhausted"


class Unavailable(BridgeError):
    code = "unavailable"
    retryable = True


class RateLimited(BridgeError):
    code = "rate_limited"
    retryable = True
