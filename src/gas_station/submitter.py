"""
Dual-authorization submitter.

Collects the user's authorization over the fee-bound payload bytes and
submits payload + (user, sponsor) authorizations to the ledger node. The
order is fixed by ``SUBMISSION_ORDER``; this module never reorders
authorizations it is handed, because a wrong order must fail at the ledger
rather than be silently corrected.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, Tuple, Union

import httpx

from .authorization import (
    SUBMISSION_ORDER,
    Authorization,
    AuthorizationPair,
    SignerRole,
    describe_authorization,
)
from .config import GasStationSettings
from .exceptions import AuthorizationMismatch, GasStationError, LedgerRejected, Stage, StageTimeout
from .ledger import LedgerNode, LedgerReceipt, LedgerRPCError
from .logging_utils import OperationLogger, new_operation_id
from .payload import FeeBoundPayload, compute_digest

logger = logging.getLogger(__name__)

UserAuthorizer = Callable[[bytes], Awaitable[Authorization]]


class FailureKind(str, Enum):
    """Why the ledger did not apply an operation."""
    INSUFFICIENT_VALUE = "insufficient_value"
    FEE_BINDING_EXPIRED = "fee_binding_expired"
    INVALID_AUTHORIZATION = "invalid_authorization"
    EXECUTION_FAILED = "execution_failed"
    CONSENSUS_REJECTED = "consensus_rejected"
    NODE_UNREACHABLE = "node_unreachable"


@dataclass(frozen=True)
class Success:
    """Ledger accepted and applied the operation."""
    digest: str
    effects: dict[str, Any] = field(default_factory=dict)
    authorizations: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """Ledger refused the operation or its execution failed."""
    kind: FailureKind
    message: str
    digest: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return False

    def to_exception(self) -> LedgerRejected:
        return LedgerRejected(self.message, kind=self.kind.value, digest=self.digest)


Outcome = Union[Success, Failure]


def classify_ledger_error(message: str) -> FailureKind:
    """Map a ledger error message onto a failure kind."""
    text = message.lower()
    if "insufficient" in text and any(word in text for word in ("balance", "coin", "value", "fund")):
        return FailureKind.INSUFFICIENT_VALUE
    if "expired" in text and any(word in text for word in ("epoch", "transaction", "fee", "gas")):
        return FailureKind.FEE_BINDING_EXPIRED
    if "signature" in text or "signer" in text:
        return FailureKind.INVALID_AUTHORIZATION
    return FailureKind.CONSENSUS_REJECTED


def _log_late_submission(task: "asyncio.Future[LedgerReceipt]", digest: str) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("Timed-out submission %s finished with error: %s", digest, error)
    else:
        logger.warning("Timed-out submission %s completed after the deadline", digest)


class DualAuthorizationSubmitter:
    """Submits fee-bound payloads with both authorizations in fixed order."""

    def __init__(
        self,
        ledger: LedgerNode,
        settings: Optional[GasStationSettings] = None,
        op_logger: Optional[OperationLogger] = None,
    ):
        self._ledger = ledger
        self._settings = settings or GasStationSettings()
        self._op_logger = op_logger or OperationLogger(config=self._settings.logging)

    async def submit(
        self,
        payload: FeeBoundPayload,
        sponsor_auth: Authorization,
        obtain_user_auth: UserAuthorizer,
        operation_id: Optional[str] = None,
    ) -> Outcome:
        """
        Obtain the user's authorization and submit the operation.

        Args:
            payload: Verified fee-bound payload
            sponsor_auth: Sponsor's authorization over ``payload.raw``
            obtain_user_auth: Called once with ``payload.raw``
            operation_id: Correlation id for logs

        Returns:
            Success or Failure; ledger rejections are reported, not raised

        Raises:
            AuthorizationMismatch, StageTimeout
        """
        operation_id = operation_id or new_operation_id()
        try:
            user_auth = await self.obtain_user_authorization(payload, obtain_user_auth, operation_id)
            pair = self.pair(payload, user_auth, sponsor_auth)
        except GasStationError as e:
            self._op_logger.log_rejection(operation_id, e)
            raise
        return await self.submit_pair(payload, pair, operation_id)

    async def obtain_user_authorization(
        self,
        payload: FeeBoundPayload,
        obtain_user_auth: UserAuthorizer,
        operation_id: str,
    ) -> Authorization:
        timeout = self._settings.timeouts.user_authorization_seconds
        async with self._op_logger.stage_context(Stage.USER_AUTHORIZATION, operation_id):
            try:
                auth = await asyncio.wait_for(obtain_user_auth(payload.raw), timeout=timeout)
            except asyncio.TimeoutError:
                raise StageTimeout(Stage.USER_AUTHORIZATION, timeout) from None
        if not isinstance(auth, Authorization):
            raise AuthorizationMismatch(
                f"user signer returned {type(auth).__name__}, expected Authorization"
            )
        return auth

    @staticmethod
    def pair(
        payload: FeeBoundPayload,
        user_auth: Authorization,
        sponsor_auth: Authorization,
    ) -> AuthorizationPair:
        """Check roles and digests, then fix the submission order."""
        expected_roles = SUBMISSION_ORDER
        if (user_auth.role, sponsor_auth.role) != expected_roles:
            raise AuthorizationMismatch(
                "expected roles (user, sponsor), got "
                f"({user_auth.role.value}, {sponsor_auth.role.value})"
            )
        digest = payload.digest
        for auth in (user_auth, sponsor_auth):
            if auth.payload_digest != digest:
                raise AuthorizationMismatch(
                    f"{auth.role.value} authorization covers a different payload",
                    details={"expected_digest": digest, "authorization_digest": auth.payload_digest},
                )
        logger.debug(
            "Paired authorizations for %s: %s",
            digest, [describe_authorization(a) for a in (user_auth, sponsor_auth)],
        )
        return AuthorizationPair(user=user_auth, sponsor=sponsor_auth)

    async def submit_pair(
        self,
        payload: FeeBoundPayload,
        pair: AuthorizationPair,
        operation_id: Optional[str] = None,
    ) -> Outcome:
        return await self.submit_authorizations(
            payload.raw, pair.as_submission_list(), operation_id=operation_id
        )

    async def submit_authorizations(
        self,
        payload_bytes: bytes,
        authorizations: Sequence[str],
        operation_id: Optional[str] = None,
    ) -> Outcome:
        """Submit ``authorizations`` verbatim, in exactly the order given."""
        operation_id = operation_id or new_operation_id()
        digest = compute_digest(payload_bytes)
        submitted = tuple(authorizations)
        timeout = self._settings.timeouts.submission_seconds

        receipt: Optional[LedgerReceipt] = None
        failure: Optional[Failure] = None
        async with self._op_logger.stage_context(Stage.SUBMISSION, operation_id, digest=digest):
            # the ledger may commit even if we stop waiting, so never cancel the call
            task = asyncio.ensure_future(self._ledger.submit_operation(payload_bytes, list(submitted)))
            try:
                receipt = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except (asyncio.TimeoutError, httpx.TimeoutException):
                task.add_done_callback(lambda t: _log_late_submission(t, digest))
                error = StageTimeout(Stage.SUBMISSION, timeout, digest=digest)
                self._op_logger.log_rejection(operation_id, error)
                raise error from None
            except LedgerRPCError as e:
                failure = Failure(kind=classify_ledger_error(str(e)), message=str(e), digest=digest)
            except httpx.HTTPError as e:
                failure = Failure(kind=FailureKind.NODE_UNREACHABLE, message=str(e), digest=digest)

        if failure is None:
            if receipt is None:
                failure = Failure(
                    kind=FailureKind.CONSENSUS_REJECTED,
                    message="Ledger returned no receipt",
                    digest=digest,
                )
            elif not receipt.succeeded:
                message = receipt.execution_error or f"execution status {receipt.execution_status}"
                kind = classify_ledger_error(message)
                if kind != FailureKind.INSUFFICIENT_VALUE:
                    kind = FailureKind.EXECUTION_FAILED
                failure = Failure(kind=kind, message=message, digest=receipt.digest)

        if failure is not None:
            self._op_logger.log_submission(
                operation_id, digest, success=False, detail=f"{failure.kind.value}: {failure.message}"
            )
            return failure

        self._op_logger.log_submission(operation_id, receipt.digest, success=True)
        return Success(digest=receipt.digest, effects=receipt.effects, authorizations=submitted)
