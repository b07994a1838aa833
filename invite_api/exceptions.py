"""Domain exceptions for the invite code service.

Every failure the redemption and issuance flows can produce has its own class,
so callers (and metrics) can tell a bad request from a degraded system without
parsing messages. The HTTP layer renders any ``InviteError`` as the uniform
response envelope using ``status_code``.

Error Taxonomy
==============
::
    InviteError
    ├─ InvalidFormatError            400  never retry
    ├─ InviteNotFoundError           404  never retry
    ├─ InviteExpiredError            410  never retry
    ├─ MaxUsesReachedError           409  never retry
    ├─ IdentityAlreadyRedeemedError  409  never retry
    ├─ InviteContendedError          423  retry after backoff
    ├─ RateLimitedError              429  retry after window
    ├─ CodeSpaceExhaustedError       500  operator alarm
    └─ StoreUnavailableError         503  retry after backoff
"""

__all__ = [
    "InviteError",
    "InvalidFormatError",
    "InviteNotFoundError",
    "InviteExpiredError",
    "MaxUsesReachedError",
    "IdentityAlreadyRedeemedError",
    "InviteContendedError",
    "RateLimitedError",
    "CodeSpaceExhaustedError",
    "StoreUnavailableError",
]


class InviteError(Exception):
    """Base exception for all invite code errors."""

    status_code: int = 500
    kind: str = "error"
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidFormatError(InviteError):
    """Raised when a code fails the format or checksum check."""

    status_code = 400
    kind = "invalid_format"

    def __init__(self, code: str):
        self.code = code
        super().__init__("Invalid invite code format or checksum")


class InviteNotFoundError(InviteError):
    """Raised when a well-formed code has no (active) record."""

    status_code = 404
    kind = "not_found"

    def __init__(self, code: str):
        self.code = code
        super().__init__("Invalid invite code")


class InviteExpiredError(InviteError):
    status_code = 410
    kind = "expired"

    def __init__(self, code: str):
        self.code = code
        super().__init__("Invite code has expired")


class MaxUsesReachedError(InviteError):
    status_code = 409
    kind = "max_uses_reached"

    def __init__(self, code: str):
        self.code = code
        super().__init__("Invite code has reached max uses")


class IdentityAlreadyRedeemedError(InviteError):
    """Raised when an email has already redeemed any invite code."""

    status_code = 409
    kind = "identity_already_redeemed"

    def __init__(self, email: str):
        self.email = email
        super().__init__("Email has already used an invite code")


class InviteContendedError(InviteError):
    """Raised when another request holds the lease for the same code.

    The lease expires on its own, so a caller may retry after a short backoff.
    """

    status_code = 423
    kind = "contended"
    retryable = True

    def __init__(self, code: str, retry_after_ms: int):
        self.code = code
        self.retry_after_ms = retry_after_ms
        super().__init__("Another request is processing this code")


class RateLimitedError(InviteError):
    status_code = 429
    kind = "rate_limited"
    retryable = True

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__("Too many requests, please try again later")


class CodeSpaceExhaustedError(InviteError):
    """Raised when no unused code could be generated within the attempt budget.

    With ~10^12 combinations this points at a broken alphabet, salt or random
    source rather than bad luck, and should page an operator.
    """

    status_code = 500
    kind = "code_space_exhausted"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Failed to generate unique code after {attempts} attempts")


class StoreUnavailableError(InviteError):
    """Raised when the database or the lock store cannot be reached."""

    status_code = 503
    kind = "store_unavailable"
    retryable = True

    def __init__(self, store: str, detail: str = ""):
        self.store = store
        self.detail = detail
        super().__init__(f"{store} is unavailable")
