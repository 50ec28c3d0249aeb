"""Exception hierarchy for the sponsored-operation lifecycle.

Every failure of an operation instance is terminal: nothing here is retried
internally. Callers decide whether to start over with a freshly built
operation.

Usage:
    from gas_station.exceptions import (
        GasStationError,
        SponsorTamperedPayload,
        StageTimeout,
    )

    try:
        result = await coordinator.sponsor(unbound)
    except SponsorTamperedPayload:
        # misbehaving sponsor, do not retry against it blindly
        raise
    except GasStationError as e:
        return JSONResponse(e.to_dict(), status_code=e.http_status)

All exceptions have:
- error_code: Machine-readable error code (e.g., "FEE_CEILING_EXCEEDED")
- http_status: Status code used by the HTTP surface
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class Stage(str, Enum):
    """Network-bound stages of one sponsored operation."""
    RESOURCE_QUERY = "resource_query"
    SPONSORSHIP = "sponsorship"
    USER_AUTHORIZATION = "user_authorization"
    SUBMISSION = "submission"


class GasStationError(Exception):
    """Base exception for all sponsored-operation errors."""

    error_code: str = "GAS_STATION_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class SponsorshipValidationError(GasStationError):
    """Invalid caller input (addresses, amounts, empty instruction lists)."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)
        self.field = field


class InvalidStateTransition(GasStationError):
    """An operation instance was driven out of its lifecycle order."""

    error_code = "INVALID_STATE_TRANSITION"
    http_status = 409

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move operation from '{current}' to '{requested}'",
            details={"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class NoEligibleResource(GasStationError):
    """The sender owns no resource able to supply a value move."""

    error_code = "NO_ELIGIBLE_RESOURCE"
    http_status = 400

    def __init__(
        self,
        owner: str,
        resource_type: str,
        required: int,
        available: Optional[int] = None,
    ) -> None:
        if available is None:
            message = f"Sender {owner} owns no resources of type {resource_type}"
        else:
            message = (
                f"Sender {owner} has no {resource_type} resource covering {required} "
                f"(largest holds {available})"
            )
        super().__init__(
            message,
            details={
                "owner": owner,
                "resource_type": resource_type,
                "required": required,
                "available": available,
            },
        )
        self.owner = owner
        self.resource_type = resource_type
        self.required = required
        self.available = available


# =============================================================================
# Integrity violations (misbehaving collaborator, not a transient condition)
# =============================================================================

class IntegrityViolation(GasStationError):
    """A collaborator returned data that breaks the shared-payload contract."""

    error_code = "INTEGRITY_VIOLATION"
    http_status = 502


class SponsorTamperedPayload(IntegrityViolation):
    """The sponsor's fee-bound payload does not match what was sent."""

    error_code = "SPONSOR_TAMPERED_PAYLOAD"

    def __init__(self, reason: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(f"Sponsor returned a tampered payload: {reason}", details=details)
        self.reason = reason


class AuthorizationMismatch(IntegrityViolation):
    """Authorizations do not carry the expected roles or payload digest."""

    error_code = "AUTHORIZATION_MISMATCH"

    def __init__(self, reason: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(f"Authorization mismatch: {reason}", details=details)
        self.reason = reason


# =============================================================================
# Rejections and timeouts
# =============================================================================

class FeeCeilingExceeded(GasStationError):
    """Sponsor bound a fee ceiling above the one the caller requested."""

    error_code = "FEE_CEILING_EXCEEDED"
    http_status = 502

    def __init__(self, requested: int, returned: int) -> None:
        super().__init__(
            f"Sponsor fee ceiling {returned} exceeds requested ceiling {requested}",
            details={"requested": requested, "returned": returned},
        )
        self.requested = requested
        self.returned = returned


class SponsorshipRejected(GasStationError):
    """Sponsor service refused to sponsor the payload."""

    error_code = "SPONSORSHIP_REJECTED"
    http_status = 502

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        details: dict[str, Any] = {"reason": reason}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(f"Sponsorship rejected: {reason}", details=details)
        self.reason = reason
        self.status_code = status_code

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class StageTimeout(GasStationError):
    """A network stage did not complete within its configured timeout."""

    error_code = "STAGE_TIMEOUT"
    http_status = 504

    def __init__(
        self,
        stage: Stage,
        timeout_seconds: float,
        digest: Optional[str] = None,
    ) -> None:
        message = f"Stage '{stage.value}' timed out after {timeout_seconds}s"
        if digest and stage == Stage.SUBMISSION:
            message += f"; operation {digest} may still have been committed"
        details: dict[str, Any] = {"stage": stage.value, "timeout_seconds": timeout_seconds}
        if digest:
            details["digest"] = digest
        super().__init__(message, details=details)
        self.stage = stage
        self.timeout_seconds = timeout_seconds
        self.digest = digest


class LedgerRejected(GasStationError):
    """Ledger node refused or failed to apply the operation."""

    error_code = "LEDGER_REJECTED"
    http_status = 422

    def __init__(
        self,
        reason: str,
        kind: Optional[str] = None,
        digest: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Ledger rejected operation: {reason}",
            details={"reason": reason, "kind": kind, "digest": digest},
        )
        self.reason = reason
        self.kind = kind
        self.digest = digest


__all__ = [
    "Stage",
    "GasStationError",
    "SponsorshipValidationError",
    "InvalidStateTransition",
    "NoEligibleResource",
    "IntegrityViolation",
    "SponsorTamperedPayload",
    "AuthorizationMismatch",
    "FeeCeilingExceeded",
    "SponsorshipRejected",
    "StageTimeout",
    "LedgerRejected",
]
