from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from fees.domain.errors import (
    EmptyCustomerIDError,
    EmptyDescriptionError,
    InvalidAmountError,
    InvalidCurrencyError,
    InvalidStatusError,
)
from fees.domain.models import Currency
from fees.domain.state_machine import BillStatus

SUPPORTED_CURRENCIES = tuple(item.value for item in Currency)


class _HasAmount(Protocol):
    amount: int


class _BillLike(Protocol):
    customer_id: str
    currency: object
    status: object


def validate_currency(value: object) -> Currency:
    try:
        return Currency(value)
    except ValueError:
        raise InvalidCurrencyError(
            f"invalid currency: {value}. Supported currencies: {', '.join(SUPPORTED_CURRENCIES)}",
            detail={"currency": str(value), "supported": list(SUPPORTED_CURRENCIES)},
        ) from None


def validate_status(value: object) -> BillStatus:
    try:
        return BillStatus(value)
    except ValueError:
        raise InvalidStatusError(
            f"invalid bill status: {value}",
            detail={"status": str(value)},
        ) from None


def validate_customer_id(customer_id: str | None) -> str:
    if customer_id is None or not customer_id.strip():
        raise EmptyCustomerIDError("customer ID cannot be empty")
    return customer_id


def validate_line_item(description: str | None, amount: object) -> None:
    if description is None or not description.strip():
        raise EmptyDescriptionError("description cannot be empty")
    # bool is an int subclass; True is not an amount
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError("amount must be positive", detail={"amount": amount})


def validate_bill(bill: _BillLike) -> None:
    validate_customer_id(bill.customer_id)
    validate_currency(bill.currency)
    validate_status(bill.status)


def calculate_total(items: Iterable[_HasAmount]) -> int:
    return sum(item.amount for item in items)


def can_add_line_item(status: BillStatus) -> bool:
    return status == BillStatus.OPEN
