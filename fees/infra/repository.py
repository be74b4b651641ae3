from __future__ import annotations

from typing import Protocol

import sqlalchemy as sa
from sqlmodel import Session, col, select

from fees.domain.errors import BillAlreadyClosedError, BillNotFoundError
from fees.domain.models import BillRead, BillRecord, BillSummaryRead, LineItem, LineItemRead, LineItemRecord
from fees.domain.state_machine import BillStatus, can_transition
from fees.infra.db import get_engine


class BillRepository(Protocol):
    def create_bill(self, bill: BillRecord) -> BillRecord: ...

    def get_bill_by_id(self, bill_id: str) -> BillRead: ...

    def get_bill_status(self, bill_id: str) -> BillStatus: ...

    def add_line_item(self, bill_id: str, item: LineItem) -> int: ...

    def delete_line_item(self, item_id: int) -> None: ...

    def list_line_items(self, bill_id: str) -> list[LineItemRead]: ...

    def update_status_and_total(self, bill_id: str, status: BillStatus, total_amount: int) -> None: ...

    def list_bills_by_customer(
        self,
        customer_id: str,
        status: BillStatus | None,
        limit: int,
        offset: int,
    ) -> list[BillSummaryRead]: ...

    def list_all_bills(self, status: BillStatus | None, limit: int, offset: int) -> list[BillSummaryRead]: ...


class SqlBillRepository:
    """Bill and line-item rows on SQLModel. Each call is its own short transaction."""

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_bill_row(self, session: Session, bill_id: str) -> BillRecord:
        row = session.get(BillRecord, bill_id)
        if row is None:
            raise BillNotFoundError(bill_id)
        return row

    def create_bill(self, bill: BillRecord) -> BillRecord:
        with self._session() as session:
            session.add(bill)
            session.commit()
            session.refresh(bill)
            return bill

    def get_bill_by_id(self, bill_id: str) -> BillRead:
        with self._session() as session:
            row = self._get_bill_row(session, bill_id)
            items = self._line_items(session, bill_id)
        return BillRead(
            id=row.id,
            customer_id=row.customer_id,
            currency=row.currency,
            status=row.status,
            line_items=items,
            total_amount=row.total_amount,
            created_at=row.created_at,
        )

    def get_bill_status(self, bill_id: str) -> BillStatus:
        with self._session() as session:
            status = session.exec(select(BillRecord.status).where(BillRecord.id == bill_id)).first()
        if status is None:
            raise BillNotFoundError(bill_id)
        return BillStatus(status)

    def add_line_item(self, bill_id: str, item: LineItem) -> int:
        record = LineItemRecord(
            bill_id=bill_id,
            description=item.description,
            amount=item.amount,
            timestamp=item.timestamp,
        )
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        return int(record.id or 0)

    def delete_line_item(self, item_id: int) -> None:
        with self._session() as session:
            session.execute(sa.delete(LineItemRecord).where(col(LineItemRecord.id) == item_id))
            session.commit()

    @staticmethod
    def _line_items(session: Session, bill_id: str) -> list[LineItemRead]:
        rows = session.exec(
            select(LineItemRecord)
            .where(LineItemRecord.bill_id == bill_id)
            .order_by(col(LineItemRecord.timestamp).asc(), col(LineItemRecord.id).asc())
        ).all()
        return [LineItemRead.model_validate(row) for row in rows]

    def list_line_items(self, bill_id: str) -> list[LineItemRead]:
        with self._session() as session:
            return self._line_items(session, bill_id)

    def update_status_and_total(self, bill_id: str, status: BillStatus, total_amount: int) -> None:
        with self._session() as session:
            row = self._get_bill_row(session, bill_id)
            current = BillStatus(row.status)
            if current != status and not can_transition(current, status):
                raise BillAlreadyClosedError(bill_id)
            row.status = status
            row.total_amount = total_amount
            session.add(row)
            session.commit()

    def _list_bills(
        self,
        customer_id: str | None,
        status: BillStatus | None,
        limit: int,
        offset: int,
    ) -> list[BillSummaryRead]:
        statement = select(BillRecord)
        if customer_id is not None:
            statement = statement.where(BillRecord.customer_id == customer_id)
        if status is not None:
            statement = statement.where(BillRecord.status == status)
        statement = (
            statement.order_by(col(BillRecord.created_at).desc(), col(BillRecord.id).desc())
            .offset(offset)
            .limit(limit)
        )
        with self._session() as session:
            rows = session.exec(statement).all()
        return [BillSummaryRead.model_validate(row) for row in rows]

    def list_bills_by_customer(
        self,
        customer_id: str,
        status: BillStatus | None,
        limit: int,
        offset: int,
    ) -> list[BillSummaryRead]:
        return self._list_bills(customer_id, status, limit, offset)

    def list_all_bills(self, status: BillStatus | None, limit: int, offset: int) -> list[BillSummaryRead]:
        return self._list_bills(None, status, limit, offset)
