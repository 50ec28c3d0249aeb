"""
Sponsored-operation pipeline.

Drives one operation instance through build -> sponsor -> user authorization
-> submission. Every instance is single-use: once it has been submitted (or
has failed) it cannot be driven again, and a retry means building a fresh
operation and asking the sponsor again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .authorization import Authorization, UserSigner
from .builder import build_payload, build_transfer
from .config import GasStationSettings
from .coordinator import SponsorshipCoordinator, SponsorshipResult
from .exceptions import GasStationError, InvalidStateTransition
from .ledger import LedgerNode
from .logging_utils import OperationLogger, new_operation_id
from .payload import Instruction, UnboundPayload
from .sponsor_client import SponsorService
from .submitter import DualAuthorizationSubmitter, Failure, FailureKind, Outcome, Success

logger = logging.getLogger(__name__)


class OperationState(str, Enum):
    BUILT = "built"
    SPONSORED = "sponsored"
    USER_AUTHORIZED = "user_authorized"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES: FrozenSet[OperationState] = frozenset(
    [OperationState.SUCCEEDED, OperationState.FAILED]
)

# Any non-terminal state may also move to FAILED (rejection, tampering, expiry).
ALLOWED_TRANSITIONS: Dict[OperationState, FrozenSet[OperationState]] = {
    OperationState.BUILT: frozenset([OperationState.SPONSORED, OperationState.FAILED]),
    OperationState.SPONSORED: frozenset([OperationState.USER_AUTHORIZED, OperationState.FAILED]),
    OperationState.USER_AUTHORIZED: frozenset([OperationState.SUBMITTED, OperationState.FAILED]),
    OperationState.SUBMITTED: frozenset([OperationState.SUCCEEDED, OperationState.FAILED]),
    OperationState.SUCCEEDED: frozenset(),
    OperationState.FAILED: frozenset(),
}


@dataclass
class SponsoredOperation:
    """One single-use sponsored operation and its lifecycle state."""
    unbound: UnboundPayload
    operation_id: str = field(default_factory=new_operation_id)
    state: OperationState = OperationState.BUILT
    sponsorship: Optional[SponsorshipResult] = None
    user_authorization: Optional[Authorization] = None
    outcome: Optional[Outcome] = None
    history: List[Tuple[OperationState, datetime]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, datetime.now(timezone.utc)))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def digest(self) -> Optional[str]:
        return self.sponsorship.digest if self.sponsorship else None

    def can_advance(self, new_state: OperationState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.state]

    def advance(self, new_state: OperationState) -> None:
        if not self.can_advance(new_state):
            raise InvalidStateTransition(self.state.value, OperationState(new_state).value)
        self.state = new_state
        self.history.append((new_state, datetime.now(timezone.utc)))
        logger.debug("Operation %s -> %s", self.operation_id, new_state.value)


class SponsoredTransactionPipeline:
    """Runs sponsored operations against a ledger node and a sponsor service."""

    def __init__(
        self,
        ledger: LedgerNode,
        sponsor_service: SponsorService,
        settings: Optional[GasStationSettings] = None,
        op_logger: Optional[OperationLogger] = None,
    ):
        self._ledger = ledger
        self._sponsor_service = sponsor_service
        self._settings = settings or GasStationSettings()
        self._op_logger = op_logger or OperationLogger(config=self._settings.logging)
        self.coordinator = SponsorshipCoordinator(sponsor_service, self._settings, self._op_logger)
        self.submitter = DualAuthorizationSubmitter(ledger, self._settings, self._op_logger)

    @property
    def ledger(self) -> LedgerNode:
        return self._ledger

    @property
    def sponsor_service(self) -> SponsorService:
        return self._sponsor_service

    def prepare(self, sender: str, instructions: Iterable[Instruction]) -> SponsoredOperation:
        return self.track(build_payload(sender, instructions))

    def track(self, unbound: UnboundPayload) -> SponsoredOperation:
        operation = SponsoredOperation(unbound=unbound)
        self._op_logger.log_built(operation.operation_id, unbound.sender, len(unbound.instructions))
        return operation

    async def prepare_transfer(
        self,
        sender: str,
        recipient: str,
        amount: int,
        resource_type: Optional[str] = None,
    ) -> SponsoredOperation:
        unbound = await build_transfer(
            self._ledger,
            sender,
            recipient,
            amount,
            resource_type or self._settings.native_resource_type,
            timeout_seconds=self._settings.timeouts.resource_query_seconds,
        )
        return self.track(unbound)

    async def sponsor(
        self,
        operation: SponsoredOperation,
        fee_ceiling: Optional[int] = None,
    ) -> SponsorshipResult:
        if not operation.can_advance(OperationState.SPONSORED):
            raise InvalidStateTransition(operation.state.value, OperationState.SPONSORED.value)
        try:
            result = await self.coordinator.sponsor(
                operation.unbound, fee_ceiling, operation_id=operation.operation_id
            )
        except Exception:
            operation.advance(OperationState.FAILED)
            raise
        operation.sponsorship = result
        operation.advance(OperationState.SPONSORED)
        return result

    async def authorize_and_submit(
        self,
        operation: SponsoredOperation,
        user_signer: UserSigner,
    ) -> Outcome:
        """
        Ask the user to authorize the sponsored payload, then submit it.

        A sponsorship that has already expired is refused here, before the
        user is asked to sign anything.
        """
        if operation.state != OperationState.SPONSORED or operation.sponsorship is None:
            raise InvalidStateTransition(operation.state.value, OperationState.USER_AUTHORIZED.value)
        sponsorship = operation.sponsorship

        if sponsorship.is_expired():
            failure = Failure(
                kind=FailureKind.FEE_BINDING_EXPIRED,
                message=f"sponsorship expired at {sponsorship.expires_at.isoformat()}",
                digest=sponsorship.digest,
            )
            self._op_logger.log_submission(
                operation.operation_id, sponsorship.digest, success=False,
                detail=f"{failure.kind.value}: refused before user authorization",
            )
            return self._finish(operation, failure)

        try:
            user_auth = await self.submitter.obtain_user_authorization(
                sponsorship.payload, user_signer.authorize, operation.operation_id
            )
            pair = self.submitter.pair(
                sponsorship.payload, user_auth, sponsorship.sponsor_authorization
            )
        except GasStationError as e:
            self._op_logger.log_rejection(operation.operation_id, e)
            operation.advance(OperationState.FAILED)
            raise
        except Exception as e:
            logger.warning(
                "User authorization for %s failed: %s", operation.operation_id, e
            )
            operation.advance(OperationState.FAILED)
            raise
        operation.user_authorization = user_auth
        operation.advance(OperationState.USER_AUTHORIZED)

        # From here on the operation counts as submitted, even if the call times out.
        operation.advance(OperationState.SUBMITTED)
        outcome = await self.submitter.submit_pair(
            sponsorship.payload, pair, operation.operation_id
        )
        return self._finish(operation, outcome)

    async def run(
        self,
        operation: SponsoredOperation,
        user_signer: UserSigner,
        fee_ceiling: Optional[int] = None,
    ) -> Outcome:
        await self.sponsor(operation, fee_ceiling)
        return await self.authorize_and_submit(operation, user_signer)

    async def execute(
        self,
        sender: str,
        instructions: Iterable[Instruction],
        user_signer: UserSigner,
        fee_ceiling: Optional[int] = None,
    ) -> Outcome:
        """Build, sponsor, authorize and submit one operation."""
        operation = self.prepare(sender, instructions)
        return await self.run(operation, user_signer, fee_ceiling)

    async def transfer(
        self,
        sender: str,
        recipient: str,
        amount: int,
        user_signer: UserSigner,
        resource_type: Optional[str] = None,
        fee_ceiling: Optional[int] = None,
    ) -> Outcome:
        operation = await self.prepare_transfer(sender, recipient, amount, resource_type)
        return await self.run(operation, user_signer, fee_ceiling)

    @staticmethod
    def _finish(operation: SponsoredOperation, outcome: Outcome) -> Outcome:
        operation.outcome = outcome
        if isinstance(outcome, Success):
            operation.advance(OperationState.SUCCEEDED)
        else:
            operation.advance(OperationState.FAILED)
        return outcome
