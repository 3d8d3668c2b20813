from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class CashAccountOrm(Base):
    __tablename__ = "cash_accounts"

    operator_id: Mapped[str] = mapped_column(String, primary_key=True)
    operator_name: Mapped[str] = mapped_column(String, nullable=False)
    yard_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    current_balance: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CashTransactionOrm(Base):
    __tablename__ = "cash_transactions"

    # Insertion order; breaks ties between transactions sharing a timestamp.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True, default=uuid4)
    operator_id: Mapped[str] = mapped_column(String, nullable=False)
    operator_name: Mapped[str] = mapped_column(String, nullable=False)
    yard_id: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    related_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    related_vin: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recorded_by: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (Index("ix_cash_transactions_operator_order", "operator_id", "timestamp", "seq"),)


class ScheduledReportOrm(Base):
    __tablename__ = "scheduled_reports"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    vin: Mapped[str] = mapped_column(String, nullable=False, index=True)
    report_kind: Mapped[str] = mapped_column(String, nullable=False)
    schedule_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    originating_transaction_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_report_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("originating_transaction_id", "report_kind", name="uq_scheduled_report_origin_kind"),
        Index("ix_scheduled_reports_due", "status", "schedule_at"),
    )


class OfflineQueueEntryOrm(Base):
    __tablename__ = "offline_queue_entries"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dead_lettered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class ManualSubmissionOrm(Base):
    __tablename__ = "manual_submissions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    vin: Mapped[str] = mapped_column(String, nullable=False, index=True)
    disposition: Mapped[str] = mapped_column(String, nullable=False)
    report: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
