from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException

from database.errors import (
    AuthorizationError,
    DeviceAuthError,
    NotFoundError,
    RateLimitError,
    RollcallError,
    ValidationError,
)

ERROR_STATUS: dict[type[RollcallError], int] = {
    ValidationError: 400,
    DeviceAuthError: 401,
    AuthorizationError: 403,
    NotFoundError: 404,
    RateLimitError: 429,
}


def status_for(exc: RollcallError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 400


@contextmanager
def http_errors() -> Iterator[None]:
    """Translate engine errors raised inside a route into HTTPException."""
    try:
        yield
    except RollcallError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
