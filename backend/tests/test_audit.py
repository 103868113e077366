"""Tests for the best-effort audit recorder."""

import logging

import pytest

from settlement.models import AuditLog
from settlement.services.audit import MODULE_COMMISSIONS, record_audit


class TestRecordAudit:

    @pytest.mark.asyncio
    async def test_writes_entry_in_savepoint(self, db):
        await record_audit(
            db,
            actor_id=42,
            module=MODULE_COMMISSIONS,
            action="APPROVE",
            entity_id=5,
            ip="10.0.0.1",
            details={"amount": "250.00"},
        )

        db.begin_nested.assert_called_once()
        entry = db.add.call_args.args[0]
        assert isinstance(entry, AuditLog)
        assert entry.user_id == 42
        assert entry.module == "COMMISSIONS"
        assert entry.action == "APPROVE"
        assert entry.entity_id == 5
        assert entry.ip_address == "10.0.0.1"
        assert entry.details == {"amount": "250.00"}

    @pytest.mark.asyncio
    async def test_long_ip_is_truncated(self, db):
        await record_audit(db, actor_id=1, module="LOANS", action="CREATE", ip="x" * 80)
        assert len(db.add.call_args.args[0].ip_address) == 45

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, db, caplog):
        db.flush.side_effect = RuntimeError("disk full")

        with caplog.at_level(logging.WARNING, logger="settlement.audit"):
            await record_audit(db, actor_id=1, module="LOANS", action="DELETE", entity_id=3)

        assert "Failed to record audit LOANS/DELETE for entity 3" in caplog.text
        assert "disk full" in caplog.text
