"""
Aritmetica di fatturazione (pura, senza DB).

- righe fattura: quantità x prezzo unitario
- sconto coupon: percentuale (con tetto) o fisso (max subtotale)
- imposta calcolata sull'imponibile scontato
- totale, saldo e stato fattura in funzione dei pagamenti
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from .errors import ClinicError, CouponError
from .models import DiscountType, InvoiceStatus

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

COUPON_CODE_RE = re.compile(r"^[A-Z0-9_-]+$")
COUPON_CODE_MAX_LEN = 50


def to_money(value: Any) -> Decimal:
    """Converte in Decimal arrotondato al centesimo (half-up)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# =========================
# Righe
# =========================
@dataclass(frozen=True)
class InvoiceLine:
    description: str
    quantity: int
    unit_price: Decimal
    item_type: str = "service"  # service | package
    service_id: str | None = None
    package_id: str | None = None

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ClinicError("Line quantity must be at least 1.")
        if Decimal(str(self.unit_price)) < 0:
            raise ClinicError("Unit price cannot be negative.")

    @property
    def total(self) -> Decimal:
        return to_money(Decimal(str(self.unit_price)) * self.quantity)

    def to_dict(self) -> dict[str, Any]:
        # JSON: importi come stringa per non perdere precisione
        d: dict[str, Any] = {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(to_money(self.unit_price)),
            "total": str(self.total),
            "item_type": self.item_type,
        }
        if self.service_id:
            d["service_id"] = self.service_id
        if self.package_id:
            d["package_id"] = self.package_id
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InvoiceLine":
        return cls(
            description=data["description"],
            quantity=int(data.get("quantity", 1)),
            unit_price=to_money(data["unit_price"]),
            item_type=data.get("item_type", "service"),
            service_id=data.get("service_id"),
            package_id=data.get("package_id"),
        )


def compute_subtotal(lines: Iterable[InvoiceLine]) -> Decimal:
    return to_money(sum((line.total for line in lines), ZERO))


# =========================
# Coupon
# =========================
@dataclass(frozen=True)
class CouponTerms:
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    min_purchase_amount: Decimal | None = None
    usage_limit: int | None = None
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    is_active: bool = True


def normalize_coupon_code(code: str) -> str:
    code = (code or "").strip().upper()
    if not code:
        raise CouponError("Coupon code cannot be empty")
    if len(code) > COUPON_CODE_MAX_LEN:
        raise CouponError("Coupon code too long")
    if not COUPON_CODE_RE.match(code):
        raise CouponError("Invalid coupon code format")
    return code


def coupon_discount(
    discount_type: DiscountType,
    value: Decimal,
    subtotal: Decimal,
    max_discount: Decimal | None = None,
) -> Decimal:
    """
    percentuale: min(subtotale * valore / 100, tetto)
    fisso:       min(valore, subtotale)
    """
    subtotal = to_money(subtotal)
    value = Decimal(str(value))
    if discount_type is DiscountType.PERCENTAGE:
        amount = subtotal * value / Decimal(100)
        if max_discount is not None and amount > Decimal(str(max_discount)):
            amount = Decimal(str(max_discount))
    else:
        amount = min(value, subtotal)
    return to_money(max(amount, ZERO))


def check_coupon(terms: CouponTerms, subtotal: Decimal, times_used: int, now: datetime | None = None) -> None:
    """Solleva CouponError se il coupon non è applicabile a questo subtotale."""
    now = now or datetime.utcnow()
    if not terms.is_active:
        raise CouponError("This coupon code does not exist or is no longer active")
    if terms.valid_from and now < terms.valid_from:
        raise CouponError(f"This coupon will be active from {terms.valid_from.date().isoformat()}")
    if terms.valid_to and now > terms.valid_to:
        raise CouponError(f"This coupon expired on {terms.valid_to.date().isoformat()}")
    if terms.min_purchase_amount and to_money(subtotal) < to_money(terms.min_purchase_amount):
        raise CouponError(f"Minimum purchase of {to_money(terms.min_purchase_amount)} required")
    if terms.usage_limit and times_used >= terms.usage_limit:
        raise CouponError("This coupon has reached its usage limit")


# =========================
# Totali
# =========================
@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal

    def balance_due(self, paid: Decimal = ZERO) -> Decimal:
        return balance_after(self.total, paid)


def compute_totals(lines: Iterable[InvoiceLine], tax_rate: Decimal, discount: Decimal = ZERO) -> InvoiceTotals:
    """
    subtotale = somma righe
    imposta   = (subtotale - sconto) * aliquota / 100
    totale    = subtotale - sconto + imposta
    """
    subtotal = compute_subtotal(lines)
    discount = min(to_money(discount), subtotal)
    taxable = subtotal - discount
    tax = to_money(taxable * Decimal(str(tax_rate)) / Decimal(100))
    return InvoiceTotals(subtotal=subtotal, discount=discount, tax=tax, total=to_money(taxable + tax))


def balance_after(total: Decimal, paid: Decimal) -> Decimal:
    return max(to_money(total) - to_money(paid), ZERO)


def status_after_payment(total: Decimal, paid: Decimal) -> InvoiceStatus:
    """Totale zero -> paid già all'emissione."""
    if balance_after(total, paid) == ZERO:
        return InvoiceStatus.PAID
    if to_money(paid) <= ZERO:
        return InvoiceStatus.ISSUED
    return InvoiceStatus.PARTIAL
