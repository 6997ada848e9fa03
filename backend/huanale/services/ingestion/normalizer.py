"""Turns loosely typed model output into fully typed transaction items."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from .contracts import NormalizedItem, Source, SourceDefaults

CENT = Decimal("0.01")

BILL_DESCRIPTION = "Auto-extracted from uploaded bill image"

_SOURCE_LABELS: dict[str, tuple[str, str]] = {
    # source: (default title, note stamped on persisted rows)
    "bill_scan": ("Bill Purchase", "Scanned Receipt"),
    "voice": ("Voice Transaction", "Voice input"),
    "text": ("Text Transaction", "Text input"),
}


def defaults_for(source: Source, currency: str = "¥") -> SourceDefaults:
    title, note = _SOURCE_LABELS[source]
    is_bill = source == "bill_scan"
    return SourceDefaults(
        source=source,
        title=title,
        currency=currency,
        note=note,
        keep_merchant=is_bill,
        expense_only=is_bill,
        description=BILL_DESCRIPTION if is_bill else None,
    )


def _clean_str(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def coerce_amount(value: Any) -> float:
    """Numeric value of *value*, or ``0.0`` when it is not a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return 0.0
    try:
        amount = float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        return 0.0
    return amount if math.isfinite(amount) else 0.0


def to_money(amount: float) -> Decimal:
    """Amount rounded to cents, matching the precision of stored rows."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def _stored_amount(amount: float) -> Optional[Decimal]:
    if not math.isfinite(amount):
        return None
    try:
        return to_money(amount)
    except InvalidOperation:
        return None


def has_valid_amount(amount: float) -> bool:
    """True when the amount is still positive once rounded to cents."""
    stored = _stored_amount(amount)
    return stored is not None and stored > 0


def is_persistable(amount: float) -> bool:
    """Batch rows keep zero amounts; the store rejects negative ones."""
    stored = _stored_amount(amount)
    return stored is not None and stored >= 0


def normalize(raw: Any, defaults: SourceDefaults) -> NormalizedItem:
    """Apply defaults to one extracted item. Pure; never raises."""
    item = raw if isinstance(raw, dict) else {}

    merchant = None
    if defaults.keep_merchant:
        merchant = _clean_str(item.get("merchant")) or None

    return NormalizedItem(
        title=_clean_str(item.get("title")) or defaults.title,
        amount=coerce_amount(item.get("amount")),
        currency=_clean_str(item.get("currency")) or defaults.currency,
        category=_clean_str(item.get("category")) or defaults.category,
        type="income" if item.get("type") == "income" and not defaults.expense_only else "expense",
        merchant=merchant,
    )
