from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, BigInteger, Column, Index
from sqlmodel import Field, SQLModel

from fees.domain.state_machine import BillStatus, OrchestratorState, WorkflowStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class Currency(StrEnum):
    USD = "USD"
    GEL = "GEL"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    subject_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class BillRecord(SQLModel, table=True):
    __tablename__ = "bills"
    __table_args__ = (
        Index("ix_bills_customer_status", "customer_id", "status"),
    )

    id: str = Field(primary_key=True)
    customer_id: str = Field(index=True)
    currency: Currency
    status: BillStatus = Field(default=BillStatus.OPEN, index=True)
    total_amount: int = Field(
        default=0,
        sa_column=Column(BigInteger, nullable=False, default=0),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class LineItemRecord(SQLModel, table=True):
    __tablename__ = "line_items"

    id: int | None = Field(default=None, primary_key=True)
    bill_id: str = Field(foreign_key="bills.id", index=True)
    description: str
    amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    timestamp: datetime = Field(default_factory=now_utc, index=True)


class WorkflowInstance(SQLModel, table=True):
    __tablename__ = "workflow_instances"

    key: str = Field(primary_key=True)
    workflow_type: str = Field(index=True)
    status: WorkflowStatus = Field(default=WorkflowStatus.RUNNING, index=True)
    state: OrchestratorState | None = Field(default=None)
    input: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    result: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    last_error: str | None = None
    started_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)
    completed_at: datetime | None = Field(default=None, index=True)
    closing_at: datetime | None = None
    owner_id: str | None = Field(default=None, index=True)
    lease_expires_at: datetime | None = Field(default=None, index=True)


class WorkflowSignal(SQLModel, table=True):
    __tablename__ = "workflow_signals"
    __table_args__ = (
        Index("ix_workflow_signals_instance_id", "instance_key", "id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    instance_key: str = Field(foreign_key="workflow_instances.key", index=True)
    signal_name: str = Field(index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    received_at: datetime = Field(default_factory=now_utc, index=True)


class WorkflowStep(SQLModel, table=True):
    __tablename__ = "workflow_steps"

    instance_key: str = Field(foreign_key="workflow_instances.key", primary_key=True)
    step_seq: int = Field(primary_key=True)
    activity_name: str
    attempts: int = Field(default=1)
    result: Any = Field(default=None, sa_column=Column(JSON, nullable=True))
    completed_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    subject_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    amount: int
    timestamp: datetime = PydanticField(default_factory=now_utc)


class FinalBill(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    total_amount: int
    status: BillStatus = BillStatus.CLOSED


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class BillCreate(BaseModel):
    customer_id: str
    currency: str


class BillCreateRead(BaseModel):
    bill_id: str


class LineItemCreate(BaseModel):
    description: str
    amount: int


class LineItemRead(ORMReadModel):
    description: str
    amount: int
    timestamp: datetime


class BillRead(ORMReadModel):
    id: str
    customer_id: str
    currency: Currency
    status: BillStatus
    line_items: list[LineItemRead] = PydanticField(default_factory=list)
    total_amount: int
    created_at: datetime


class BillSummaryRead(ORMReadModel):
    id: str
    customer_id: str
    currency: Currency
    status: BillStatus
    created_at: datetime


class BillListRead(BaseModel):
    bills: list[BillSummaryRead]
    total: int


class WorkflowInstanceRead(ORMReadModel):
    key: str
    workflow_type: str
    status: WorkflowStatus
    state: OrchestratorState | None
    result: dict[str, Any] | None
    last_error: str | None
    signal_count: int = 0
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    closing_at: datetime | None = None
    owner_id: str | None = None
