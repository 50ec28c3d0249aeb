"""Tests for gas_station.logging_utils."""
from __future__ import annotations

import json
import logging

import pytest

from gas_station.config import LoggingConfig
from gas_station.exceptions import SponsorshipRejected, SponsorTamperedPayload, Stage
from gas_station.logging_utils import (
    INTEGRITY_LOGGER_NAME,
    OperationLogger,
    new_operation_id,
    setup_logging,
)


class TestStageContext:
    """Tests for stage timing."""

    @pytest.mark.asyncio
    async def test_success_records_duration(self):
        op_logger = OperationLogger()

        async with op_logger.stage_context(Stage.SPONSORSHIP, "op_1", fee_ceiling=None) as ctx:
            ctx.metadata["digest"] = "abc"

        assert ctx.success
        assert ctx.duration_ms is not None
        assert ctx.to_dict()["metadata"] == {"fee_ceiling": None, "digest": "abc"}

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_reraised(self):
        op_logger = OperationLogger()

        with pytest.raises(RuntimeError):
            async with op_logger.stage_context(Stage.SUBMISSION, "op_2") as ctx:
                raise RuntimeError("node went away")

        assert not ctx.success
        assert ctx.error == "node went away"


class TestRejectionLogging:
    """Ordinary rejections and integrity violations use different channels."""

    def test_rejection_logs_warning(self, caplog):
        op_logger = OperationLogger()

        with caplog.at_level(logging.WARNING):
            op_logger.log_rejection("op_3", SponsorshipRejected("pool exhausted"))

        assert any(
            r.levelno == logging.WARNING and r.name == "gas_station" for r in caplog.records
        )
        assert not any(r.name == INTEGRITY_LOGGER_NAME for r in caplog.records)

    def test_integrity_violation_is_audited(self, tmp_path, caplog):
        audit_path = tmp_path / "audit.jsonl"
        op_logger = OperationLogger(config=LoggingConfig(audit_log_path=str(audit_path)))

        with caplog.at_level(logging.ERROR):
            op_logger.log_rejection("op_4", SponsorTamperedPayload("digest mismatch"))

        assert any(r.name == INTEGRITY_LOGGER_NAME for r in caplog.records)
        entry = json.loads(audit_path.read_text().splitlines()[-1])
        assert entry["event_type"] == "integrity_violation"
        assert entry["data"]["error"] == "SPONSOR_TAMPERED_PAYLOAD"
        assert entry["data"]["operation_id"] == "op_4"


class TestHelpers:
    def test_mask_addresses(self):
        address = "0x" + "ab" * 32
        masked = OperationLogger(config=LoggingConfig(mask_addresses=True))

        assert masked.mask(address) == f"{address[:6]}...{address[-4:]}"
        assert OperationLogger().mask(address) == address

    def test_operation_ids_are_unique(self):
        ids = {new_operation_id() for _ in range(50)}

        assert len(ids) == 50
        assert all(i.startswith("op_") for i in ids)

    def test_setup_logging_quiets_http_clients(self):
        names = ("gas_station", "httpx", "httpcore")
        previous = {name: logging.getLogger(name).level for name in names}
        try:
            setup_logging("DEBUG")

            assert logging.getLogger("gas_station").level == logging.DEBUG
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            for name, level in previous.items():
                logging.getLogger(name).setLevel(level)
