"""Request pipeline shared by every endpoint set.

Mutations run ``authenticate -> admit -> validate -> guarded fetch/check ->
mutate``; queries run ``authenticate -> read``. Each stage yields a
``Result`` and the first ``Err`` ends the request, so a rejected request
never reaches storage writes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Iterable, Optional, TypeVar

from taskflow.logging import get_logger
from taskflow.service.errors import AuthenticationError, RateLimitError
from taskflow.service.ownership import OwnershipGuard
from taskflow.service.rate_limit import RateLimitDecision, RateLimiter, RateLimitKey
from taskflow.service.result import Err, Ok, Result
from taskflow.service.validation import Check, first_failure, is_valid_user_id
from taskflow.storage.repositories import RecordMutation, Repository

if TYPE_CHECKING:
    from taskflow.service.auth import AuthContext

logger = get_logger(__name__)

T = TypeVar("T")
M = TypeVar("M")

NOT_AUTHENTICATED = "You must be logged in to perform this action"
RATE_LIMIT_EXCEEDED = "Rate limit exceeded. Please try again later."


class Orchestrator:
    def __init__(self, limiter: RateLimiter, guard: Optional[OwnershipGuard] = None) -> None:
        self.limiter = limiter
        self.guard = guard or OwnershipGuard()

    def authenticate(self, principal: Optional["AuthContext"]) -> Result["AuthContext"]:
        if principal is None or not is_valid_user_id(principal.user_id):
            return Err(AuthenticationError(NOT_AUTHENTICATED))
        return Ok(principal)

    async def admit(self, operation: str, subject: str, cost: int = 1) -> Result[RateLimitDecision]:
        decision = await self.limiter.consume(RateLimitKey(operation, subject), cost)
        if not decision.allowed:
            logger.info(
                "rate_limit_denied",
                operation=operation,
                subject=subject,
                retry_after_ms=decision.retry_after_ms,
            )
            return Err(
                RateLimitError(
                    f"{RATE_LIMIT_EXCEEDED} Retry after {decision.retry_after_ms}ms",
                    retry_after_ms=decision.retry_after_ms,
                )
            )
        return Ok(decision)

    @staticmethod
    def _reject(operation: str, stage: str, result: Err) -> Err:
        logger.info(
            "request_rejected",
            operation=operation,
            stage=stage,
            error_code=result.error.error_code,
        )
        return result

    async def mutate(
        self,
        operation: str,
        principal: Optional["AuthContext"],
        checks: Callable[[], Iterable[Check]],
        action: Callable[["AuthContext"], Result[T]],
    ) -> Result[T]:
        """Run the mutation pipeline.

        ``checks`` is evaluated only after admission so time-based rules see
        the validation instant. ``action`` performs the guarded fetch, owner
        check and write; it must not await.
        """

        auth = self.authenticate(principal)
        if isinstance(auth, Err):
            return self._reject(operation, "authenticate", auth)
        caller = auth.value
        admitted = await self.admit(operation, caller.user_id)
        if isinstance(admitted, Err):
            return self._reject(operation, "rate_limit", admitted)
        validated = first_failure(checks())
        if isinstance(validated, Err):
            return self._reject(operation, "validate", validated)
        outcome = action(caller)
        if isinstance(outcome, Err):
            return self._reject(operation, "guard", outcome)
        return outcome

    async def admit_anonymous(
        self,
        operation: str,
        subject: str,
        checks: Callable[[], Iterable[Check]],
        action: Callable[[], Result[T]],
    ) -> Result[T]:
        """Pipeline for callers without an identity yet (signup, login)."""
        admitted = await self.admit(operation, subject)
        if isinstance(admitted, Err):
            return self._reject(operation, "rate_limit", admitted)
        validated = first_failure(checks())
        if isinstance(validated, Err):
            return self._reject(operation, "validate", validated)
        outcome = action()
        if isinstance(outcome, Err):
            return self._reject(operation, "action", outcome)
        return outcome

    def query(
        self,
        operation: str,
        principal: Optional["AuthContext"],
        read: Callable[["AuthContext"], Result[T]],
    ) -> Result[T]:
        auth = self.authenticate(principal)
        if isinstance(auth, Err):
            return self._reject(operation, "authenticate", auth)
        outcome = read(auth.value)
        if isinstance(outcome, Err):
            return self._reject(operation, "read", outcome)
        return outcome

    def within_owned(
        self,
        repo: Repository[M],
        record_id: str,
        caller_id: str,
        apply: Callable[[RecordMutation[M], M], T],
        *,
        not_found: str,
    ) -> Result[T]:
        """Hold ``record_id``, check its owner, then run ``apply`` on it.

        A failed check leaves the block without staged changes, so nothing
        is written.
        """

        with repo.guarded(record_id) as mutation:
            checked = self.guard.assert_found_and_owned(
                mutation.record, caller_id, not_found=not_found
            )
            if isinstance(checked, Err):
                return checked
            return Ok(apply(mutation, checked.value))

    def read_owned(
        self, record: Optional[M], caller_id: str, *, not_found: str
    ) -> Result[M]:
        return self.guard.assert_found_and_owned(record, caller_id, not_found=not_found)
