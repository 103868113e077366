"""Persisted record of unexpected failures and rejected requests."""

import enum
from datetime import datetime

from sqlalchemy import String, Text, Integer, DateTime, Enum, Float, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base


class ErrorSeverity(str, enum.Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorLog(Base):
    """One captured failure.

    ``error_code`` is set when the failure was an engine error (e.g.
    ``INVALID_STATE_TRANSITION``); for crashes it holds the exception class.
    """

    __tablename__ = "error_logs"
    __table_args__ = (Index("ix_error_logs_occurred", "occurred_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    severity: Mapped[ErrorSeverity] = mapped_column(Enum(ErrorSeverity), nullable=False)
    error_code: Mapped[str] = mapped_column(String(100), nullable=False)
    detail: Mapped[str] = mapped_column(Text, nullable=False)
    stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # Request context, when the failure happened inside an HTTP request
    http_method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    requester_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
