"""Tests for the commission approval view (existing + pending-generation rows)."""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from settlement.models import Commission, CommissionStatus, CommissionType, Loan, LoanStatus
from settlement.services.errors import ValidationError
from settlement.services.pending import PENDING_GENERATION, list_commission_view

SVC = "settlement.services.pending"


def _loan(loan_id, code, start, net="10000.00", seller_id=7) -> Loan:
    return Loan(
        id=loan_id,
        code=code,
        start_date=start,
        term=84,
        installment_value=Decimal("200.00"),
        gross_value=Decimal("12000.00"),
        net_value=Decimal(net),
        status=LoanStatus.ACTIVE,
        customer_id=30 + loan_id,
        seller_id=seller_id,
        organ_id=1,
        bank_id=1,
        product_type_id=1,
        group_id=1,
        rate_table_id=1,
    )


class TestCommissionView:

    @pytest.mark.asyncio
    async def test_existing_rows_then_pending_rows(self, db):
        approved_at = datetime(2026, 10, 20, tzinfo=timezone.utc)
        commissioned = _loan(1, 100, date(2026, 10, 2))
        commission = Commission(
            id=5,
            loan_id=1,
            seller_id=7,
            period="10/2026",
            commission_type=CommissionType.PERCENTAGE,
            reference_value=Decimal("1"),
            calculated_amount=Decimal("100.00"),
            status=CommissionStatus.APPROVED,
            approved_at=approved_at,
        )
        commission.loan = commissioned
        uncommissioned = _loan(2, 101, date(2026, 10, 15), net="4000.00")

        with patch("settlement.services.commissions.list_commissions", return_value=[commission]) as listing, \
             patch(f"{SVC}._loans_without_commission", return_value=[uncommissioned]) as pending:
            rows = await list_commission_view(db, period="10/2026", seller_id=7)

        listing.assert_awaited_once_with(db, period="10/2026", seller_id=7)
        pending.assert_awaited_once_with(db, period="10/2026", seller_id=7)
        assert [row.loan_id for row in rows] == [1, 2]

        existing, transient = rows
        assert existing.status == "approved"
        assert existing.commission_id == 5
        assert existing.calculated_amount == Decimal("100.00")
        assert existing.approved_at == approved_at
        assert not existing.is_pending

        assert transient.is_pending
        assert transient.status == PENDING_GENERATION
        assert transient.commission_id is None
        assert transient.calculated_amount == Decimal("0.00")
        assert transient.base_value == Decimal("4000.00")
        assert transient.period == "10/2026"
        assert transient.loan_code == 101

    @pytest.mark.asyncio
    async def test_pending_period_defaults_to_loan_start_month(self, db):
        loan = _loan(3, 102, date(2026, 9, 30))
        with patch("settlement.services.commissions.list_commissions", return_value=[]), \
             patch(f"{SVC}._loans_without_commission", return_value=[loan]):
            rows = await list_commission_view(db)

        assert rows[0].period == "09/2026"

    @pytest.mark.asyncio
    async def test_nothing_persisted(self, db):
        with patch("settlement.services.commissions.list_commissions", return_value=[]), \
             patch(f"{SVC}._loans_without_commission", return_value=[_loan(4, 103, date(2026, 10, 1))]):
            await list_commission_view(db, period="10/2026")

        db.add.assert_not_called()
        db.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_period_rejected(self, db):
        with pytest.raises(ValidationError, match="MM/YYYY"):
            await list_commission_view(db, period="10-2026")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["01/0000", "12/9999"])
    async def test_unrepresentable_period_rejected(self, db, token):
        with pytest.raises(ValidationError, match="Period year"):
            await list_commission_view(db, period=token)
        db.execute.assert_not_awaited()
