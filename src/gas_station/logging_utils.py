"""
Logging utilities for sponsored operations.

Features:
- Per-stage timing for the sponsorship / user authorization / submission calls
- Distinct integrity-violation channel (misbehaving collaborators)
- Rejection logging for ordinary, possibly transient failures
- Audit trail support
- Address masking
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import LoggingConfig
from .exceptions import GasStationError, IntegrityViolation, Stage

logger = logging.getLogger(__name__)

INTEGRITY_LOGGER_NAME = "gas_station.integrity"


@dataclass
class StageContext:
    """Timing and outcome of one network stage."""
    operation_id: str
    stage: Stage
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark stage as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "stage": self.stage.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


class OperationLogger:
    """
    Structured logger for the sponsored-operation lifecycle.

    Integrity violations go to their own logger so they can be routed and
    alerted on separately from ordinary rejections.
    """

    def __init__(
        self,
        name: str = "gas_station",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._integrity_logger = logging.getLogger(INTEGRITY_LOGGER_NAME)
        self._config = config or LoggingConfig()

    @property
    def config(self) -> LoggingConfig:
        return self._config

    @staticmethod
    def _get_level(level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    def mask(self, address: Optional[str]) -> Optional[str]:
        if not address or not self._config.mask_addresses:
            return address
        return self._mask_address(address)

    @staticmethod
    def _mask_address(address: str) -> str:
        """Mask middle portion of address for privacy."""
        if len(address) < 10:
            return address
        return f"{address[:6]}...{address[-4:]}"

    @asynccontextmanager
    async def stage_context(self, stage: Stage, operation_id: str, **metadata):
        """
        Context manager timing one network stage.

        Usage:
            async with op_logger.stage_context(Stage.SPONSORSHIP, op_id) as ctx:
                response = await sponsor.sponsor(...)
                ctx.metadata["digest"] = response.digest
        """
        ctx = StageContext(operation_id=operation_id, stage=stage, metadata=metadata)
        self._logger.debug(
            f"Starting {stage.value} for {operation_id}",
            extra={"stage": ctx.to_dict()},
        )
        try:
            yield ctx
            ctx.complete(success=True)
        except BaseException as e:
            ctx.complete(success=False, error=str(e) or type(e).__name__)
            raise
        finally:
            level = (
                self._get_level(self._config.stage_level)
                if ctx.success
                else self._get_level(self._config.rejection_level)
            )
            self._logger.log(
                level,
                f"Completed {stage.value} for {operation_id} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"stage": ctx.to_dict()},
            )

    def log_built(self, operation_id: str, sender: str, instruction_count: int) -> None:
        self._logger.log(
            self._get_level(self._config.operation_level),
            f"Operation {operation_id} built for {self.mask(sender)} "
            f"with {instruction_count} instruction(s)",
        )

    def log_sponsored(
        self,
        operation_id: str,
        digest: str,
        sponsor: str,
        budget: int,
    ) -> None:
        self._logger.log(
            self._get_level(self._config.operation_level),
            f"Operation {operation_id} sponsored: digest={digest} "
            f"sponsor={self.mask(sponsor)} budget={budget}",
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("operation_sponsored", {
                "operation_id": operation_id,
                "digest": digest,
                "sponsor": self.mask(sponsor),
                "budget": budget,
            })

    def log_submission(
        self,
        operation_id: str,
        digest: str,
        success: bool,
        detail: Optional[str] = None,
    ) -> None:
        level = (
            self._get_level(self._config.operation_level)
            if success
            else self._get_level(self._config.rejection_level)
        )
        self._logger.log(
            level,
            f"Operation {operation_id} submitted: digest={digest} success={success}"
            + (f" ({detail})" if detail else ""),
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("operation_submitted", {
                "operation_id": operation_id,
                "digest": digest,
                "success": success,
                "detail": detail,
            })

    def log_rejection(self, operation_id: str, error: GasStationError) -> None:
        """Log an ordinary rejection (sponsor refusal, ceiling, timeout)."""
        if isinstance(error, IntegrityViolation):
            self.log_integrity_violation(operation_id, error)
            return
        self._logger.log(
            self._get_level(self._config.rejection_level),
            f"Operation {operation_id} rejected: [{error.error_code}] {error.message}",
            extra={"rejection": error.to_dict()},
        )

    def log_integrity_violation(self, operation_id: str, error: IntegrityViolation) -> None:
        """Log a collaborator integrity violation on the dedicated channel."""
        self._integrity_logger.log(
            self._get_level(self._config.integrity_level),
            f"INTEGRITY VIOLATION in operation {operation_id}: "
            f"[{error.error_code}] {error.message}",
            extra={"integrity_violation": error.to_dict()},
        )
        # Always audit integrity violations
        self._write_audit_log("integrity_violation", {
            "operation_id": operation_id,
            **error.to_dict(),
        })

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }

        if self._config.audit_log_path:
            try:
                with open(self._config.audit_log_path, "a") as f:
                    f.write(json.dumps(audit_entry, default=str) + "\n")
            except OSError as e:
                self._logger.error(f"Failed to write audit log: {e}")
        else:
            self._logger.info(
                f"AUDIT: {event_type}",
                extra={"audit": audit_entry},
            )


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("gas_station").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def new_operation_id() -> str:
    """Generate a unique operation ID."""
    return f"op_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
