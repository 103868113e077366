"""HTTP-level tests: routing, permissions and engine-error mapping.

Services are patched; these tests check the wiring between request, service
call and response.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from settlement.auth_utils import (
    PERM_COMMISSIONS_MANAGE,
    PERM_FINANCIAL_MANAGE,
    PERM_LOANS_EDIT_ALL,
    Requester,
    get_requester,
)
from settlement.database import get_db
from settlement.main import app
from settlement.models import (
    Commission,
    CommissionStatus,
    CommissionType,
    FinancialTransaction,
    Loan,
    LoanStatus,
    TransactionCategory,
    TransactionDirection,
)
from settlement.services.errors import (
    EditLockedError,
    IntegrityViolationError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from settlement.services.pending import CommissionViewRow, PENDING_GENERATION

SELLER = Requester(id=7, ip="10.0.0.7")
MANAGER = Requester(
    id=1,
    ip="10.0.0.1",
    permissions=frozenset({PERM_LOANS_EDIT_ALL, PERM_COMMISSIONS_MANAGE, PERM_FINANCIAL_MANAGE}),
)

LOAN_BODY = {
    "start_date": "2026-10-03",
    "term": 84,
    "installment_value": "150.00",
    "gross_value": "6000.00",
    "net_value": "5000.00",
    "customer_id": 3,
    "seller_id": 99,
    "organ_id": 1,
    "bank_id": 2,
    "product_type_id": 1,
    "group_id": 1,
    "rate_table_id": 4,
}


def _loan(**overrides) -> Loan:
    loan = Loan(
        id=3,
        code=12,
        start_date=date(2026, 10, 3),
        term=84,
        installment_value=Decimal("150.00"),
        gross_value=Decimal("6000.00"),
        net_value=Decimal("5000.00"),
        status=LoanStatus.ACTIVE,
        customer_id=3,
        seller_id=7,
        organ_id=1,
        bank_id=2,
        product_type_id=1,
        group_id=1,
        rate_table_id=4,
        created_at=datetime(2026, 10, 3, tzinfo=timezone.utc),
    )
    for k, v in overrides.items():
        setattr(loan, k, v)
    return loan


def _commission(status=CommissionStatus.OPEN) -> Commission:
    return Commission(
        id=5,
        loan_id=3,
        seller_id=7,
        period="10/2026",
        commission_type=CommissionType.FIXED_AMOUNT,
        reference_value=Decimal("250"),
        calculated_amount=Decimal("250.00"),
        status=status,
    )


def _tx() -> FinancialTransaction:
    return FinancialTransaction(
        id=12,
        transaction_date=date(2026, 10, 19),
        amount=Decimal("1200.00"),
        direction=TransactionDirection.OUT,
        category=TransactionCategory.FIXED_EXPENSE,
        description="Office rent",
        created_by=1,
    )


@pytest.fixture
def as_requester():
    """Return a function that installs the given requester and a mock session."""
    async def _db():
        yield AsyncMock()

    def _install(requester: Requester):
        app.dependency_overrides[get_db] = _db
        app.dependency_overrides[get_requester] = lambda: requester
        return TestClient(app)

    with patch("settlement.middleware.error_capture.log_error_standalone", new_callable=AsyncMock):
        yield _install
    app.dependency_overrides.clear()


# ===================================================================
# Health
# ===================================================================


def test_health():
    resp = TestClient(app).get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


# ===================================================================
# Loans
# ===================================================================


class TestLoanEndpoints:

    def test_seller_without_edit_all_creates_own_loan(self, as_requester):
        client = as_requester(SELLER)
        with patch("settlement.services.loans.create_loan", return_value=_loan()) as create:
            resp = client.post("/api/loans/", json=LOAN_BODY)

        assert resp.status_code == 201
        assert resp.json()["code"] == 12
        assert resp.json()["status"] == "active"
        fields = create.await_args.args[1]
        assert fields["seller_id"] == 7
        assert create.await_args.kwargs["requester_id"] == 7
        assert create.await_args.kwargs["auto_generate_commission"] is False

    def test_manager_may_register_for_another_seller(self, as_requester):
        client = as_requester(MANAGER)
        with patch("settlement.services.loans.create_loan", return_value=_loan(seller_id=99)) as create:
            resp = client.post("/api/loans/", json={**LOAN_BODY, "auto_generate_commission": True})

        assert resp.status_code == 201
        assert create.await_args.args[1]["seller_id"] == 99
        assert create.await_args.kwargs["auto_generate_commission"] is True

    def test_unexpected_failure_is_logged_outside_request_session(self, as_requester):
        client = as_requester(MANAGER)
        with patch("settlement.services.loans.create_loan", side_effect=RuntimeError("db gone")), \
             patch("settlement.api.loans.log_error_standalone", new_callable=AsyncMock) as router_log:
            resp = client.post("/api/loans/", json=LOAN_BODY)

        assert resp.status_code == 500
        assert resp.json()["code"] == "INTERNAL_ERROR"
        router_log.assert_awaited_once()
        assert router_log.await_args.kwargs == {"module": "api.loans", "function_name": "create_loan"}

    def test_net_above_gross_is_422(self, as_requester):
        client = as_requester(MANAGER)
        resp = client.post("/api/loans/", json={**LOAN_BODY, "net_value": "9000.00"})
        assert resp.status_code == 422

    def test_status_change_requires_edit_all(self, as_requester):
        client = as_requester(SELLER)
        resp = client.patch("/api/loans/3/status", json={"status": "finalized"})
        assert resp.status_code == 403

    def test_finalize(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.loans.update_loan_status",
            return_value=_loan(status=LoanStatus.FINALIZED),
        ) as update:
            resp = client.patch("/api/loans/3/status", json={"status": "finalized"})

        assert resp.status_code == 200
        assert resp.json()["status"] == "finalized"
        assert update.await_args.args[2] == LoanStatus.FINALIZED

    def test_invalid_transition_is_409(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.loans.update_loan_status",
            side_effect=InvalidStateTransitionError("Cannot move loan 3 from finalized to active"),
        ):
            resp = client.patch("/api/loans/3/status", json={"status": "active"})

        assert resp.status_code == 409
        assert resp.json() == {
            "detail": "Cannot move loan 3 from finalized to active",
            "code": "INVALID_STATE_TRANSITION",
        }

    def test_edit_locked_is_409(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.loans.update_loan",
            side_effect=EditLockedError("Loan 3 is locked: its commission is approved"),
        ):
            resp = client.patch("/api/loans/3", json={"note": "typo"})

        assert resp.status_code == 409
        assert resp.json()["code"] == "EDIT_LOCKED"

    def test_edit_passes_only_sent_fields(self, as_requester):
        client = as_requester(MANAGER)
        with patch("settlement.services.loans.update_loan", return_value=_loan(term=96)) as update:
            resp = client.patch("/api/loans/3", json={"term": 96})

        assert resp.status_code == 200
        assert update.await_args.args[2] == {"term": 96}

    def test_delete_blocked_carries_hint(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.loans.delete_loan",
            side_effect=IntegrityViolationError("Loan 3 has a commission", hint="commissions.loan_id"),
        ):
            resp = client.delete("/api/loans/3")

        assert resp.status_code == 409
        assert resp.json()["hint"] == "commissions.loan_id"
        assert resp.json()["code"] == "INTEGRITY_VIOLATION"

    def test_delete(self, as_requester):
        client = as_requester(MANAGER)
        with patch("settlement.services.loans.delete_loan") as delete:
            resp = client.delete("/api/loans/3")

        assert resp.status_code == 204
        delete.assert_awaited_once()

    def test_seller_cannot_read_other_sellers_loan(self, as_requester):
        client = as_requester(SELLER)
        with patch("settlement.services.loans.get_loan", return_value=_loan(seller_id=8)):
            resp = client.get("/api/loans/3")
        assert resp.status_code == 404

    def test_seller_listing_is_scoped_to_self(self, as_requester):
        client = as_requester(SELLER)
        with patch("settlement.services.loans.list_loans", return_value=[_loan()]) as listing:
            resp = client.get("/api/loans/", params={"seller_id": 8})

        assert resp.status_code == 200
        assert listing.await_args.kwargs["seller_id"] == 7


# ===================================================================
# Commissions
# ===================================================================


class TestCommissionEndpoints:

    def test_actions_require_manage_permission(self, as_requester):
        client = as_requester(SELLER)
        resp = client.patch("/api/commissions/5", json={"action": "APPROVE"})
        assert resp.status_code == 403

    def test_approve(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.commissions.approve_commission",
            return_value=_commission(CommissionStatus.APPROVED),
        ) as approve:
            resp = client.patch("/api/commissions/5", json={"action": "APPROVE"})

        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"
        approve.assert_awaited_once()
        assert approve.await_args.kwargs == {"requester_id": 1, "ip": "10.0.0.1"}

    def test_cancel(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.commissions.cancel_commission",
            return_value=_commission(CommissionStatus.CANCELED),
        ):
            resp = client.patch("/api/commissions/5", json={"action": "CANCEL"})
        assert resp.json()["status"] == "canceled"

    def test_second_approval_is_409(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.commissions.approve_commission",
            side_effect=InvalidStateTransitionError("Cannot approve: commission 5 is approved, expected open"),
        ):
            resp = client.patch("/api/commissions/5", json={"action": "APPROVE"})
        assert resp.status_code == 409
        assert resp.json()["code"] == "INVALID_STATE_TRANSITION"

    def test_edit(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.commissions.edit_commission",
            return_value=_commission(),
        ) as edit:
            resp = client.patch(
                "/api/commissions/5",
                json={"commission_type": "fixed_amount", "reference_value": "250"},
            )

        assert resp.status_code == 200
        assert edit.await_args.kwargs["commission_type"] == CommissionType.FIXED_AMOUNT
        assert edit.await_args.kwargs["reference"] == Decimal("250")

    def test_action_and_edit_together_is_422(self, as_requester):
        client = as_requester(MANAGER)
        resp = client.patch(
            "/api/commissions/5",
            json={"action": "APPROVE", "commission_type": "fixed_amount", "reference_value": "1"},
        )
        assert resp.status_code == 422

    def test_reference_beyond_four_places_is_422(self, as_requester):
        client = as_requester(MANAGER)
        resp = client.post(
            "/api/commissions/",
            json={"loan_id": 3, "commission_type": "percentage", "reference_value": "1.00005", "period": "10/2026"},
        )
        assert resp.status_code == 422

    def test_create_open(self, as_requester):
        client = as_requester(MANAGER)
        with patch("settlement.services.commissions.open_commission", return_value=_commission()) as open_mock, \
             patch("settlement.services.commissions.generate_and_approve") as generate:
            resp = client.post("/api/commissions/", json={
                "loan_id": 3,
                "commission_type": "fixed_amount",
                "reference_value": "250",
                "period": "10/2026",
            })

        assert resp.status_code == 201
        open_mock.assert_awaited_once()
        generate.assert_not_awaited()

    def test_create_and_approve_pending_row(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.commissions.generate_and_approve",
            return_value=_commission(CommissionStatus.APPROVED),
        ) as generate:
            resp = client.post("/api/commissions/", json={
                "loan_id": 3,
                "commission_type": "percentage",
                "reference_value": "1",
                "period": "10/2026",
                "approve": True,
            })

        assert resp.status_code == 201
        assert generate.await_args.kwargs["commission_type"] == CommissionType.PERCENTAGE

    def test_duplicate_missing_loan_is_404(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.commissions.open_commission",
            side_effect=NotFoundError("Loan 3 not found"),
        ):
            resp = client.post("/api/commissions/", json={
                "loan_id": 3,
                "commission_type": "percentage",
                "reference_value": "1",
                "period": "10/2026",
            })
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    def test_view_includes_pending_rows(self, as_requester):
        client = as_requester(MANAGER)
        row = CommissionViewRow(
            loan_id=4,
            loan_code=13,
            customer_id=3,
            seller_id=7,
            loan_start_date=date(2026, 10, 9),
            base_value=Decimal("4000.00"),
            status=PENDING_GENERATION,
            calculated_amount=Decimal("0.00"),
            period="10/2026",
        )
        with patch("settlement.services.pending.list_commission_view", return_value=[row]) as view:
            resp = client.get("/api/commissions/", params={"period": "10/2026"})

        assert resp.status_code == 200
        body = resp.json()
        assert body[0]["status"] == "pending_generation"
        assert body[0]["commission_id"] is None
        assert view.await_args.kwargs == {"period": "10/2026", "seller_id": None}

    def test_view_bad_period_is_400(self, as_requester):
        client = as_requester(MANAGER)
        with patch(
            "settlement.services.pending.list_commission_view",
            side_effect=ValidationError("Period must be in MM/YYYY format"),
        ):
            resp = client.get("/api/commissions/", params={"period": "2026-10"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"


# ===================================================================
# Financial
# ===================================================================


class TestFinancialEndpoints:

    def test_balance(self, as_requester):
        client = as_requester(MANAGER)
        totals = {
            "total_in": Decimal("5000.00"),
            "total_out": Decimal("350.00"),
            "balance": Decimal("4650.00"),
        }
        with patch("settlement.services.ledger.get_balance", return_value=totals):
            resp = client.get("/api/financial/balance", params={"period": "10/2026"})

        assert resp.status_code == 200
        assert resp.json()["period"] == "10/2026"
        assert Decimal(resp.json()["balance"]) == Decimal("4650.00")

    def test_manual_entry_forwards_idempotency_key(self, as_requester):
        client = as_requester(MANAGER)
        with patch("settlement.services.ledger.record_manual_transaction", return_value=_tx()) as record:
            resp = client.post(
                "/api/financial/",
                json={
                    "amount": "1200.00",
                    "direction": "out",
                    "category": "fixed_expense",
                    "description": "Office rent",
                },
                headers={"Idempotency-Key": "rent-2026-10"},
            )

        assert resp.status_code == 201
        assert resp.json()["id"] == 12
        assert record.await_args.kwargs["client_key"] == "rent-2026-10"
        assert record.await_args.kwargs["category"] == TransactionCategory.FIXED_EXPENSE

    def test_manual_entry_cannot_use_engine_category(self, as_requester):
        client = as_requester(MANAGER)
        resp = client.post("/api/financial/", json={
            "amount": "10.00",
            "direction": "out",
            "category": "commission",
            "description": "Manual payout",
        })
        assert resp.status_code == 422

    def test_ledger_requires_financial_permission(self, as_requester):
        client = as_requester(SELLER)
        resp = client.get("/api/financial/")
        assert resp.status_code == 403

    def test_list_transactions(self, as_requester):
        client = as_requester(MANAGER)
        with patch("settlement.services.ledger.list_transactions", return_value=[_tx()]) as listing:
            resp = client.get("/api/financial/", params={"category": "fixed_expense"})

        assert resp.status_code == 200
        assert resp.json()[0]["category"] == "fixed_expense"
        assert listing.await_args.kwargs["category"] == TransactionCategory.FIXED_EXPENSE
