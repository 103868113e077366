"""Pydantic schemas for request/response validation."""

from datetime import datetime, date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


# ── Loans ─────────────────────────────────────────────

class LoanCreate(BaseModel):
    start_date: date
    term: int = Field(gt=0)
    installment_value: Decimal = Field(gt=0)
    gross_value: Decimal = Field(gt=0)
    net_value: Decimal = Field(gt=0)
    note: Optional[str] = None
    status: Literal["active", "finalized", "canceled", "late"] = "active"
    customer_id: int
    seller_id: Optional[int] = None
    organ_id: int
    bank_id: int
    product_type_id: int
    group_id: int
    rate_table_id: int
    auto_generate_commission: bool = False

    @model_validator(mode="after")
    def _net_within_gross(self):
        if self.net_value > self.gross_value:
            raise ValueError("net_value cannot exceed gross_value")
        return self


class LoanUpdate(BaseModel):
    """Plain field edit; status changes go through the status endpoint."""
    start_date: Optional[date] = None
    term: Optional[int] = Field(None, gt=0)
    installment_value: Optional[Decimal] = Field(None, gt=0)
    gross_value: Optional[Decimal] = Field(None, gt=0)
    net_value: Optional[Decimal] = Field(None, gt=0)
    note: Optional[str] = None
    customer_id: Optional[int] = None
    seller_id: Optional[int] = None
    organ_id: Optional[int] = None
    bank_id: Optional[int] = None
    product_type_id: Optional[int] = None
    group_id: Optional[int] = None
    rate_table_id: Optional[int] = None


class LoanStatusUpdate(BaseModel):
    status: Literal["active", "finalized", "canceled", "late"]


class LoanResponse(BaseModel):
    id: int
    code: int
    start_date: date
    term: int
    installment_value: Decimal
    gross_value: Decimal
    net_value: Decimal
    note: Optional[str] = None
    status: str
    customer_id: int
    seller_id: int
    organ_id: int
    bank_id: int
    product_type_id: int
    group_id: int
    rate_table_id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ── Commissions ───────────────────────────────────────

class CommissionCreate(BaseModel):
    loan_id: int
    commission_type: Literal["percentage", "fixed_amount"]
    reference_value: Decimal = Field(gt=0, decimal_places=4)
    period: str = Field(pattern=r"^\d{2}/\d{4}$")
    approve: bool = Field(
        default=False,
        description="Generate and approve in one step (pending-generation rows)",
    )


class CommissionUpdate(BaseModel):
    """Either a lifecycle action or a type/reference edit."""
    action: Optional[Literal["APPROVE", "CANCEL"]] = None
    commission_type: Optional[Literal["percentage", "fixed_amount"]] = None
    reference_value: Optional[Decimal] = Field(None, gt=0, decimal_places=4)

    @model_validator(mode="after")
    def _action_or_edit(self):
        editing = self.commission_type is not None or self.reference_value is not None
        if self.action and editing:
            raise ValueError("Send either an action or an edit, not both")
        if not self.action and not (self.commission_type and self.reference_value is not None):
            raise ValueError("An edit needs both commission_type and reference_value")
        return self


class CommissionResponse(BaseModel):
    id: int
    loan_id: int
    seller_id: int
    period: str
    commission_type: str
    reference_value: Decimal
    calculated_amount: Decimal
    status: str
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CommissionViewRowResponse(BaseModel):
    loan_id: int
    loan_code: int
    customer_id: int
    seller_id: int
    loan_start_date: date
    base_value: Decimal
    status: str
    calculated_amount: Decimal
    commission_id: Optional[int] = None
    period: Optional[str] = None
    commission_type: Optional[str] = None
    reference_value: Optional[Decimal] = None
    approved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ── Financial ─────────────────────────────────────────

class TransactionResponse(BaseModel):
    id: int
    transaction_date: date
    amount: Decimal
    direction: str
    category: str
    description: str
    origin_id: Optional[int] = None
    loan_id: Optional[int] = None
    settled_on: Optional[date] = None
    receipt_reference: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ManualTransactionCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    direction: Literal["in", "out"]
    category: Literal["fixed_expense", "variable_expense", "other"]
    description: str = Field(min_length=1, max_length=500)
    transaction_date: Optional[date] = None
    settled_on: Optional[date] = None
    receipt_reference: Optional[str] = Field(None, max_length=255)


class BalanceResponse(BaseModel):
    period: Optional[str] = None
    total_in: Decimal
    total_out: Decimal
    balance: Decimal
