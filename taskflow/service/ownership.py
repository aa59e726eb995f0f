from __future__ import annotations

from typing import Optional, Protocol, TypeVar

from taskflow.service.errors import AuthorizationError, NotFoundError
from taskflow.service.result import Err, Ok, Result

NOT_AUTHORIZED = "You are not authorized to perform this action"


class Owned(Protocol):
    owner_id: str


R = TypeVar("R", bound=Owned)


class OwnershipGuard:
    """Compares a fetched record's owner with the caller. Never touches storage."""

    @staticmethod
    def assert_owned(record: R, caller_id: str) -> Result[R]:
        if record.owner_id != caller_id:
            return Err(AuthorizationError(NOT_AUTHORIZED))
        return Ok(record)

    @classmethod
    def assert_found_and_owned(
        cls, record: Optional[R], caller_id: str, *, not_found: str
    ) -> Result[R]:
        """Missing records fail with ``NotFoundError`` before the owner check."""
        if record is None:
            return Err(NotFoundError(not_found))
        return cls.assert_owned(record, caller_id)
