"""
Payment allocation for a checkout.

Given the cart total and the tender lines proposed by the cashier, decide
whether the sale is fully paid, partially paid, or a debit (nothing
collected), and reject allocations that overpay or fall short without the
partial flag.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import money


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    MOBILE = "mobile"
    OTHER = "other"


class PayStatus(str, Enum):
    PAID = "paid"
    PARTIAL = "partial"
    DEBIT = "debit"


class AllocationError(money.PosError):
    """Rejected allocation. `reason` is one of the REASON_* codes below."""

    REASON_UNKNOWN_METHOD = "unknown_method"
    REASON_NEGATIVE_AMOUNT = "negative_amount"
    REASON_OVERPAYMENT = "overpayment"
    REASON_UNDERPAYMENT = "underpayment"

    def __init__(self, reason: str, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.index = index


@dataclass(frozen=True)
class Payment:
    method: PaymentMethod
    amount_minor: int
    note: Optional[str] = None
    remote_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"method": self.method.value, "amount_minor": self.amount_minor, "note": self.note,
                "remote_id": self.remote_id}


@dataclass(frozen=True)
class Allocation:
    total_minor: int
    payments: Tuple[Payment, ...]
    paid_minor: int
    pending_minor: int
    status: PayStatus


def _coerce_method(raw: Any, index: int) -> PaymentMethod:
    if isinstance(raw, PaymentMethod):
        return raw
    try:
        return PaymentMethod(str(raw or "").strip().lower())
    except ValueError:
        raise AllocationError(
            AllocationError.REASON_UNKNOWN_METHOD,
            f"Payment #{index + 1} has unknown method {raw!r}",
            index,
        ) from None


def _coerce_payment(raw: Any, index: int) -> Payment:
    if isinstance(raw, Payment):
        method, amount, note = raw.method, raw.amount_minor, raw.note
    elif isinstance(raw, dict):
        method = raw.get("method")
        amount = raw.get("amount_minor", raw.get("amount"))
        note = raw.get("note")
    else:
        method, amount = raw[0], raw[1]
        note = raw[2] if len(raw) > 2 else None
    method = _coerce_method(method, index)
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise money.InvalidAmount(f"Payment #{index + 1} amount must be minor units (int), got {amount!r}")
    return Payment(method=method, amount_minor=amount, note=note)


def classify(total_minor: int, paid_minor: int, epsilon: int = 0) -> PayStatus:
    if total_minor - paid_minor <= epsilon:
        return PayStatus.PAID
    if paid_minor == 0:
        return PayStatus.DEBIT
    return PayStatus.PARTIAL


def allocate(
    total_minor: int,
    proposed: Iterable[Any],
    allow_partial: bool = False,
    epsilon: int = 0,
) -> Allocation:
    """Validate proposed payments against `total_minor`.

    Checks run in order and the first failure wins: methods/amounts, then
    overpayment, then (unless `allow_partial`) underpayment.
    """
    money.require_non_negative(total_minor, "total")
    payments: List[Payment] = [_coerce_payment(p, i) for i, p in enumerate(proposed or [])]

    for i, p in enumerate(payments):
        if p.amount_minor < 0:
            raise AllocationError(
                AllocationError.REASON_NEGATIVE_AMOUNT,
                f"Payment #{i + 1} amount must not be negative",
                i,
            )

    paid = sum(p.amount_minor for p in payments)
    if paid - total_minor > epsilon:
        raise AllocationError(
            AllocationError.REASON_OVERPAYMENT,
            f"Payments {money.to_decimal(paid)} exceed total {money.to_decimal(total_minor)}",
        )
    if not allow_partial and total_minor - paid > epsilon:
        raise AllocationError(
            AllocationError.REASON_UNDERPAYMENT,
            f"Payments {money.to_decimal(paid)} do not cover total {money.to_decimal(total_minor)}",
        )

    status = classify(total_minor, paid, epsilon)
    # shortfalls within epsilon are written off
    pending = 0 if status == PayStatus.PAID else total_minor - paid
    return Allocation(
        total_minor=total_minor,
        payments=tuple(payments),
        paid_minor=paid,
        pending_minor=pending,
        status=status,
    )


def change_due(tendered_minor: Optional[int], payments: Sequence[Payment]) -> int:
    """Cash handed back when the customer gives more than the cash lines."""
    if tendered_minor is None:
        return 0
    money.require_non_negative(tendered_minor, "cash tendered")
    cash = sum(p.amount_minor for p in payments if p.method == PaymentMethod.CASH)
    return max(0, tendered_minor - cash)
