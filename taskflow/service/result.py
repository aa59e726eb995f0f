"""Typed success/failure values passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, ClassVar, Generic, TypeVar, Union

from taskflow.service.errors import ServiceError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Err:
    error: ServiceError
    ok: ClassVar[bool] = False


Result = Union[Ok[T], Err]


def then(result: Result[T], fn: Callable[[T], Result[U]]) -> Result[U]:
    """Run ``fn`` on the value of ``result``; pass failures through untouched."""
    if isinstance(result, Err):
        return result
    return fn(result.value)


def unwrap(result: Result[T]) -> T:
    """Return the value or raise the carried error."""
    if isinstance(result, Err):
        raise result.error
    return result.value


__all__ = ["Ok", "Err", "Result", "then", "unwrap"]
