"""Tagged service results.

Services that callers branch on return ``Ok(data)`` or ``Err(kind, message)``
instead of raising; ``unwrap`` turns an ``Err`` back into the matching
``AppError`` at the HTTP edge.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from orgscope.core.errors import (
    AppError,
    Conflict,
    ErrorKind,
    Forbidden,
    InternalError,
    NotFound,
    Unauthenticated,
    ValidationError,
)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    data: T
    success: bool = True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    success: bool = False


ServiceResult = Union[Ok[T], Err]


_ERRORS_BY_KIND: dict[ErrorKind, type[AppError]] = {
    ErrorKind.UNAUTHENTICATED: Unauthenticated,
    ErrorKind.FORBIDDEN: Forbidden,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.NOT_FOUND: NotFound,
    ErrorKind.CONFLICT: Conflict,
    ErrorKind.INTERNAL: InternalError,
}


def unwrap(result: ServiceResult[T]) -> T:
    """Return the data of an ``Ok`` or raise the ``AppError`` matching an ``Err``."""
    if isinstance(result, Ok):
        return result.data
    error_cls = _ERRORS_BY_KIND.get(result.kind, InternalError)
    raise error_cls(result.message)
