"""
Sponsorship coordinator.

Sends an unbound payload to the sponsor service and accepts the answer only
if it still describes the same operation:

1. The returned bytes decode to a canonical fee-bound payload
2. Sender + instructions are byte-identical to what was sent
3. The fee resource belongs to the sponsor, not the sender, and is not
   used by any instruction
4. The returned digest is the digest of the returned bytes
5. The bound fee ceiling respects the requested ceiling, if any

Anything else is discarded. Failures are never retried here.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from .authorization import Authorization, SignerRole
from .config import GasStationSettings
from .exceptions import (
    FeeCeilingExceeded,
    GasStationError,
    SponsorshipRejected,
    SponsorshipValidationError,
    SponsorTamperedPayload,
    Stage,
    StageTimeout,
)
from .logging_utils import OperationLogger, new_operation_id
from .payload import FeeBoundPayload, PayloadDecodeError, UnboundPayload, decode_base64
from .sponsor_client import SponsorResponse, SponsorService, SponsorServiceError

logger = logging.getLogger(__name__)


def _fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:16]


@dataclass(frozen=True)
class SponsorshipResult:
    """Verified sponsor answer: fee-bound payload plus the sponsor's authorization."""
    payload: FeeBoundPayload
    sponsor_authorization: Authorization
    digest: str
    expires_at: Optional[datetime] = None
    expire_after_epoch: Optional[int] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class SponsorshipCoordinator:
    """Obtains and verifies fee bindings from a sponsor service."""

    def __init__(
        self,
        sponsor_service: SponsorService,
        settings: Optional[GasStationSettings] = None,
        op_logger: Optional[OperationLogger] = None,
    ):
        self._sponsor = sponsor_service
        self._settings = settings or GasStationSettings()
        self._op_logger = op_logger or OperationLogger(config=self._settings.logging)

    def effective_ceiling(self, fee_ceiling: Optional[int]) -> Optional[int]:
        """Explicit ceiling first, then the configured default, else None."""
        ceiling = fee_ceiling if fee_ceiling is not None else self._settings.default_fee_ceiling
        if ceiling is not None and (isinstance(ceiling, bool) or not isinstance(ceiling, int) or ceiling <= 0):
            raise SponsorshipValidationError("fee ceiling must be a positive integer", field="fee_ceiling")
        return ceiling

    async def sponsor(
        self,
        unbound: UnboundPayload,
        fee_ceiling: Optional[int] = None,
        operation_id: Optional[str] = None,
    ) -> SponsorshipResult:
        """
        Request sponsorship for ``unbound`` and verify the result.

        Args:
            unbound: Payload built by the payload builder
            fee_ceiling: Maximum fee budget the caller accepts; None defers to
                the configured default or, failing that, the sponsor's estimate
            operation_id: Correlation id for logs

        Returns:
            SponsorshipResult with the verified fee-bound payload

        Raises:
            SponsorTamperedPayload, FeeCeilingExceeded, SponsorshipRejected,
            StageTimeout
        """
        operation_id = operation_id or new_operation_id()
        ceiling = self.effective_ceiling(fee_ceiling)
        try:
            response = await self._request(unbound, ceiling, operation_id)
            payload = self.verify(unbound, response, ceiling)
        except GasStationError as e:
            self._op_logger.log_rejection(operation_id, e)
            raise

        authorization = Authorization.for_payload(
            SignerRole.SPONSOR, response.signature, payload.raw
        )
        self._op_logger.log_sponsored(
            operation_id, payload.digest, payload.fee.owner, payload.fee.budget
        )
        return SponsorshipResult(
            payload=payload,
            sponsor_authorization=authorization,
            digest=payload.digest,
            expires_at=response.expires_at,
            expire_after_epoch=response.expire_after_epoch,
        )

    async def _request(
        self,
        unbound: UnboundPayload,
        ceiling: Optional[int],
        operation_id: str,
    ) -> SponsorResponse:
        timeout = self._settings.timeouts.sponsorship_seconds
        async with self._op_logger.stage_context(
            Stage.SPONSORSHIP, operation_id, fee_ceiling=ceiling
        ) as ctx:
            try:
                response = await asyncio.wait_for(
                    self._sponsor.sponsor(unbound.to_base64(), unbound.sender, ceiling),
                    timeout=timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                raise StageTimeout(Stage.SPONSORSHIP, timeout) from None
            except SponsorServiceError as e:
                raise SponsorshipRejected(e.reason, status_code=e.status_code) from e
            except httpx.HTTPError as e:
                raise SponsorshipRejected(f"sponsor unreachable: {e}") from e
            ctx.metadata["digest"] = response.digest
        return response

    def verify(
        self,
        unbound: UnboundPayload,
        response: SponsorResponse,
        ceiling: Optional[int],
    ) -> FeeBoundPayload:
        """Check a sponsor response against the payload that was sent."""
        try:
            payload = FeeBoundPayload.from_bytes(decode_base64(response.tx_bytes))
        except PayloadDecodeError as e:
            raise SponsorTamperedPayload(f"undecodable fee-bound payload ({e})") from e

        expected = unbound.intent_bytes()
        returned = payload.intent_bytes()
        if returned != expected:
            raise SponsorTamperedPayload(
                "sender or instructions differ from the submitted payload",
                details={
                    "expected_fingerprint": _fingerprint(expected),
                    "returned_fingerprint": _fingerprint(returned),
                },
            )

        if payload.fee.owner == unbound.sender:
            raise SponsorTamperedPayload(
                "fee resource is owned by the sender, not the sponsor",
                details={"fee_owner": payload.fee.owner},
            )

        overlap = sorted(set(payload.fee.payment_ids) & unbound.referenced_objects())
        if overlap:
            raise SponsorTamperedPayload(
                "fee resource is also referenced by an instruction",
                details={"objects": overlap},
            )

        if response.digest.lower() != payload.digest:
            raise SponsorTamperedPayload(
                "returned digest does not match the returned payload",
                details={"returned_digest": response.digest, "computed_digest": payload.digest},
            )

        if ceiling is not None and payload.fee.budget > ceiling:
            raise FeeCeilingExceeded(requested=ceiling, returned=payload.fee.budget)

        return payload
