from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.engine import Engine

from fees.domain.errors import BillAlreadyClosedError, BillNotFoundError
from fees.domain.models import BillRecord, Currency, LineItem, now_utc
from fees.domain.state_machine import BillStatus
from fees.infra.repository import SqlBillRepository


def _seed(repository: SqlBillRepository) -> None:
    base = now_utc()
    rows = [
        ("bill-c1-1", "c1", Currency.USD, BillStatus.CLOSED, 0),
        ("bill-c1-2", "c1", Currency.GEL, BillStatus.OPEN, 1),
        ("bill-c1-3", "c1", Currency.USD, BillStatus.OPEN, 2),
        ("bill-c2-1", "c2", Currency.USD, BillStatus.OPEN, 3),
    ]
    for bill_id, customer_id, currency, status, minutes in rows:
        repository.create_bill(
            BillRecord(
                id=bill_id,
                customer_id=customer_id,
                currency=currency,
                status=status,
                created_at=base + timedelta(minutes=minutes),
            )
        )


def test_get_bill_includes_line_items_in_time_order(db_engine: Engine) -> None:
    repository = SqlBillRepository()
    repository.create_bill(BillRecord(id="bill-c1-1", customer_id="c1", currency=Currency.USD))
    start = now_utc()
    repository.add_line_item("bill-c1-1", LineItem(description="second", amount=20, timestamp=start + timedelta(seconds=1)))
    repository.add_line_item("bill-c1-1", LineItem(description="first", amount=10, timestamp=start))

    bill = repository.get_bill_by_id("bill-c1-1")

    assert bill.status == BillStatus.OPEN
    assert bill.total_amount == 0
    assert [item.description for item in bill.line_items] == ["first", "second"]
    assert [item.description for item in repository.list_line_items("bill-c1-1")] == ["first", "second"]


def test_missing_bill_raises_not_found(db_engine: Engine) -> None:
    repository = SqlBillRepository()

    with pytest.raises(BillNotFoundError):
        repository.get_bill_by_id("bill-missing")
    with pytest.raises(BillNotFoundError):
        repository.get_bill_status("bill-missing")
    with pytest.raises(BillNotFoundError):
        repository.update_status_and_total("bill-missing", BillStatus.CLOSED, 0)


def test_update_status_and_total(db_engine: Engine) -> None:
    repository = SqlBillRepository()
    repository.create_bill(BillRecord(id="bill-c1-1", customer_id="c1", currency=Currency.GEL))

    repository.update_status_and_total("bill-c1-1", BillStatus.CLOSED, 4200)

    assert repository.get_bill_status("bill-c1-1") == BillStatus.CLOSED
    assert repository.get_bill_by_id("bill-c1-1").total_amount == 4200


def test_list_bills_by_customer_newest_first(db_engine: Engine) -> None:
    repository = SqlBillRepository()
    _seed(repository)

    everything = repository.list_bills_by_customer("c1", None, 10, 0)
    open_only = repository.list_bills_by_customer("c1", BillStatus.OPEN, 10, 0)
    second_page = repository.list_bills_by_customer("c1", None, 2, 2)

    assert [bill.id for bill in everything] == ["bill-c1-3", "bill-c1-2", "bill-c1-1"]
    assert [bill.id for bill in open_only] == ["bill-c1-3", "bill-c1-2"]
    assert [bill.id for bill in second_page] == ["bill-c1-1"]


def test_list_all_bills_spans_customers(db_engine: Engine) -> None:
    repository = SqlBillRepository()
    _seed(repository)

    everything = repository.list_all_bills(None, 50, 0)
    closed = repository.list_all_bills(BillStatus.CLOSED, 50, 0)

    assert [bill.id for bill in everything] == ["bill-c2-1", "bill-c1-3", "bill-c1-2", "bill-c1-1"]
    assert [bill.customer_id for bill in closed] == ["c1"]


def test_closed_bill_cannot_reopen(db_engine: Engine) -> None:
    repository = SqlBillRepository()
    repository.create_bill(BillRecord(id="bill-c1-1", customer_id="c1", currency=Currency.USD))
    repository.update_status_and_total("bill-c1-1", BillStatus.CLOSED, 300)
    repository.update_status_and_total("bill-c1-1", BillStatus.CLOSED, 300)

    with pytest.raises(BillAlreadyClosedError):
        repository.update_status_and_total("bill-c1-1", BillStatus.OPEN, 0)

    assert repository.get_bill_status("bill-c1-1") == BillStatus.CLOSED


def test_delete_line_item_removes_only_that_row(db_engine: Engine) -> None:
    repository = SqlBillRepository()
    repository.create_bill(BillRecord(id="bill-c1-1", customer_id="c1", currency=Currency.USD))
    kept = repository.add_line_item("bill-c1-1", LineItem(description="kept", amount=10))
    refused = repository.add_line_item("bill-c1-1", LineItem(description="refused", amount=20))
    assert refused != kept

    repository.delete_line_item(refused)

    assert [item.description for item in repository.list_line_items("bill-c1-1")] == ["kept"]
