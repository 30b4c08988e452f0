class RollcallError(Exception):
    """Base class for engine errors surfaced to callers."""


class ValidationError(RollcallError):
    """Malformed input or a broken precondition; nothing was written."""


class NotFoundError(RollcallError):
    pass


class AuthorizationError(RollcallError):
    pass


class DeviceAuthError(RollcallError):
    """
    Hardware authentication failure.

    Unknown chip, wrong token and inactive device all raise this with the
    same message so callers cannot tell them apart.
    """

    def __init__(self, message: str = "Unauthorized hardware.") -> None:
        super().__init__(message)


class RateLimitError(RollcallError):
    def __init__(self, message: str = "Too many attempts. Try again later.") -> None:
        super().__init__(message)
