from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import func, select

from .config import DEFAULT_TAX_RATE, PACKAGE_TAX_RATE
from .db import db_session
from .errors import ClinicError, CouponError, InvalidTransitionError, NotFoundError
from .models import (
    CouponUsage,
    DiscountPolicy,
    Invoice,
    InvoiceStatus,
    Package,
    Patient,
    Payment,
    PaymentMethod,
    Refund,
)
from .pricing import (
    ZERO,
    CouponTerms,
    InvoiceLine,
    balance_after,
    check_coupon,
    compute_subtotal,
    compute_totals,
    coupon_discount,
    normalize_coupon_code,
    status_after_payment,
    to_money,
)

logger = logging.getLogger(__name__)

CLOSED_STATUSES = (InvoiceStatus.VOID, InvoiceStatus.REFUNDED)


# =========================
# Coupon
# =========================
def _terms(policy: DiscountPolicy) -> CouponTerms:
    return CouponTerms(
        code=policy.code,
        discount_type=policy.discount_type,
        discount_value=policy.discount_value,
        max_discount_amount=policy.max_discount_amount,
        min_purchase_amount=policy.min_purchase_amount,
        usage_limit=policy.usage_limit,
        valid_from=policy.valid_from,
        valid_to=policy.valid_to,
        is_active=policy.is_active,
    )


def _resolve_coupon(s, code: str, subtotal: Decimal, now: datetime | None = None) -> tuple[DiscountPolicy, Decimal]:
    code = normalize_coupon_code(code)
    policy = s.execute(
        select(DiscountPolicy).where(DiscountPolicy.code == code, DiscountPolicy.is_active.is_(True))
    ).scalar_one_or_none()
    if not policy:
        raise CouponError("This coupon code does not exist or is no longer active")

    used = s.execute(select(func.count(CouponUsage.id)).where(CouponUsage.coupon_code == code)).scalar_one()
    check_coupon(_terms(policy), subtotal, used, now)
    amount = coupon_discount(policy.discount_type, policy.discount_value, subtotal, policy.max_discount_amount)
    return policy, amount


def validate_coupon(code: str, subtotal: Decimal) -> dict:
    """Anteprima sconto senza consumare il coupon."""
    with db_session() as s:
        policy, amount = _resolve_coupon(s, code, to_money(subtotal))
        return {
            "code": policy.code,
            "type": policy.discount_type.value,
            "value": str(policy.discount_value),
            "amount": str(amount),
        }


# =========================
# Fatture
# =========================
def _issue_invoice(
    s,
    patient_id: str,
    lines: list[InvoiceLine],
    tax_rate: Decimal,
    coupon_code: str | None = None,
    appointment_id: str | None = None,
    created_by: str | None = None,
    due_date: date | None = None,
) -> Invoice:
    """Calcola i totali, registra l'uso del coupon ed emette la fattura (issued, paid se a totale zero)."""
    if not lines:
        raise ClinicError("Invoice must have at least one line.")

    policy = None
    discount = ZERO
    if coupon_code:
        policy, discount = _resolve_coupon(s, coupon_code, compute_subtotal(lines))

    totals = compute_totals(lines, tax_rate, discount)
    now = datetime.utcnow()
    inv = Invoice(
        patient_id=patient_id,
        appointment_id=appointment_id,
        lines=[line.to_dict() for line in lines],
        subtotal=totals.subtotal,
        discount_code=policy.code if policy else None,
        discount_type=policy.discount_type.value if policy else None,
        discount_amount=totals.discount,
        tax_amount=totals.tax,
        total_amount=totals.total,
        balance_due=totals.balance_due(),
        status=status_after_payment(totals.total, ZERO),
        due_date=due_date,
        issued_at=now,
        created_at=now,
        created_by=created_by,
    )
    s.add(inv)
    s.flush()

    if policy:
        s.add(
            CouponUsage(
                coupon_code=policy.code,
                invoice_id=inv.id,
                patient_id=patient_id,
                discount_amount=totals.discount,
                used_by=created_by,
            )
        )

    logger.info("Invoice %s issued: total %s", inv.id, totals.total)
    return inv


def create_invoice(
    patient_id: str,
    lines: list[InvoiceLine],
    tax_rate: Decimal | None = None,
    coupon_code: str | None = None,
    created_by: str | None = None,
    due_date: date | None = None,
) -> dict:
    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Patient not found.")
        rate = DEFAULT_TAX_RATE if tax_rate is None else Decimal(str(tax_rate))
        inv = _issue_invoice(s, patient_id, lines, rate, coupon_code=coupon_code, created_by=created_by, due_date=due_date)
        return _invoice_flat(inv)


def create_package_invoice(
    patient_id: str,
    packages: list[tuple[str, int]],
    coupon_code: str | None = None,
    created_by: str | None = None,
) -> dict:
    """packages: [(package_id, quantità)]; ogni pacchetto una sola volta."""
    if not packages:
        raise ClinicError("Please add at least one package")
    ids = [pid for pid, _ in packages]
    if len(set(ids)) != len(ids):
        raise ClinicError("This package is already in the invoice")

    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Patient not found.")

        lines = []
        for package_id, quantity in packages:
            pkg = s.get(Package, package_id)
            if not pkg or not pkg.is_active:
                raise NotFoundError(f"Package {package_id} not found.")
            lines.append(
                InvoiceLine(
                    description=f"{pkg.name} Package",
                    quantity=quantity,
                    unit_price=pkg.bundle_price,
                    item_type="package",
                    package_id=pkg.id,
                )
            )

        inv = _issue_invoice(s, patient_id, lines, PACKAGE_TAX_RATE, coupon_code=coupon_code, created_by=created_by)
        return _invoice_flat(inv)


def _invoice_flat(inv: Invoice) -> dict:
    return {
        "id": inv.id,
        "patient_id": inv.patient_id,
        "appointment_id": inv.appointment_id,
        "status": inv.status.value,
        "lines": inv.lines,
        "subtotal": str(to_money(inv.subtotal)),
        "discount_code": inv.discount_code,
        "discount_amount": str(to_money(inv.discount_amount)),
        "tax_amount": str(to_money(inv.tax_amount)),
        "total_amount": str(to_money(inv.total_amount)),
        "balance_due": str(to_money(inv.balance_due)),
        "due_date": inv.due_date.isoformat() if inv.due_date else None,
        "issued_at": inv.issued_at.isoformat() if inv.issued_at else None,
    }


def _get_invoice(s, invoice_id: str) -> Invoice:
    inv = s.get(Invoice, invoice_id)
    if not inv:
        raise NotFoundError("Invoice not found.")
    return inv


def get_invoice_flat(invoice_id: str) -> dict:
    with db_session() as s:
        return _invoice_flat(_get_invoice(s, invoice_id))


def list_invoices_flat(
    patient_id: str | None = None,
    status: InvoiceStatus | str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    with db_session() as s:
        q = select(Invoice).order_by(Invoice.created_at.desc())
        if patient_id:
            q = q.where(Invoice.patient_id == patient_id)
        if status:
            q = q.where(Invoice.status == (InvoiceStatus(status) if isinstance(status, str) else status))
        return [_invoice_flat(i) for i in s.scalars(q.offset(offset).limit(limit))]


def void_invoice(invoice_id: str) -> dict:
    with db_session() as s:
        inv = _get_invoice(s, invoice_id)
        if inv.payments:
            raise InvalidTransitionError("Cannot void an invoice with recorded payments.")
        inv.status = InvoiceStatus.VOID
        inv.balance_due = ZERO
        return _invoice_flat(inv)


# =========================
# Pagamenti
# =========================
def _paid_total(s, invoice_id: str) -> Decimal:
    paid = s.execute(select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.invoice_id == invoice_id)).scalar_one()
    return to_money(paid)


def record_payment(
    invoice_id: str,
    amount: Decimal,
    method: PaymentMethod | str = PaymentMethod.CASH,
    transaction_ref: str | None = None,
    notes: str | None = None,
    received_by: str | None = None,
) -> dict:
    """
    Use case: registrare un pagamento.
    - importo > 0 e non oltre il saldo
    - aggiorna saldo e stato (partial / paid)
    """
    amount = to_money(amount)
    method = PaymentMethod(method) if isinstance(method, str) else method
    if amount <= ZERO:
        raise ClinicError("Payment amount must be greater than zero.")

    with db_session() as s:
        inv = _get_invoice(s, invoice_id)
        if inv.status in CLOSED_STATUSES:
            raise InvalidTransitionError(f"Cannot record a payment on a {inv.status.value} invoice.")
        if amount > to_money(inv.balance_due):
            raise ClinicError(f"Payment exceeds balance due ({to_money(inv.balance_due)}).")

        s.add(
            Payment(
                invoice_id=inv.id,
                amount=amount,
                method=method,
                transaction_ref=transaction_ref or None,
                notes=notes or None,
                received_by=received_by,
            )
        )
        s.flush()

        paid = _paid_total(s, inv.id)
        inv.balance_due = balance_after(inv.total_amount, paid)
        inv.status = status_after_payment(inv.total_amount, paid)
        logger.info("Payment of %s on invoice %s: status %s", amount, inv.id, inv.status.value)
        return _invoice_flat(inv)


def list_payments_flat(invoice_id: str | None = None, limit: int = 50) -> list[dict]:
    with db_session() as s:
        q = select(Payment).order_by(Payment.received_at.desc()).limit(limit)
        if invoice_id:
            q = q.where(Payment.invoice_id == invoice_id)
        return [
            {
                "id": p.id,
                "invoice_id": p.invoice_id,
                "amount": str(to_money(p.amount)),
                "method": p.method.value,
                "transaction_ref": p.transaction_ref,
                "received_at": p.received_at.isoformat(),
            }
            for p in s.scalars(q)
        ]


# =========================
# Rimborsi
# =========================
def create_refund(payment_id: str, amount: Decimal, reason: str) -> str:
    """Richiesta di rimborso: 0 < importo <= pagato - già rimborsato."""
    amount = to_money(amount)
    if not reason or not reason.strip():
        raise ClinicError("Refund reason is required.")

    with db_session() as s:
        payment = s.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment not found.")

        already = s.execute(
            select(func.coalesce(func.sum(Refund.amount), 0)).where(Refund.payment_id == payment_id)
        ).scalar_one()
        refundable = to_money(payment.amount) - to_money(already)
        if amount <= ZERO or amount > refundable:
            raise ClinicError(f"Refund amount must be between 0.01 and {refundable}")

        r = Refund(payment_id=payment_id, amount=amount, reason=reason.strip())
        s.add(r)
        s.flush()
        logger.info("Refund %s requested on payment %s: %s", r.id, payment_id, amount)
        return r.id


def process_refund(refund_id: str, approved_by: str | None = None) -> dict:
    """Approva il rimborso; se i rimborsi coprono tutto il pagato la fattura diventa refunded."""
    with db_session() as s:
        r = s.get(Refund, refund_id)
        if not r:
            raise NotFoundError("Refund not found.")
        if r.processed_at is not None:
            raise InvalidTransitionError("Refund already processed.")

        r.processed_at = datetime.utcnow()
        r.approved_by = approved_by
        s.flush()

        inv = r.payment.invoice
        paid = _paid_total(s, inv.id)
        refunded = s.execute(
            select(func.coalesce(func.sum(Refund.amount), 0))
            .join(Payment, Payment.id == Refund.payment_id)
            .where(Payment.invoice_id == inv.id, Refund.processed_at.is_not(None))
        ).scalar_one()
        if paid > ZERO and to_money(refunded) >= paid:
            inv.status = InvoiceStatus.REFUNDED

        logger.info("Refund %s processed", r.id)
        return {
            "id": r.id,
            "payment_id": r.payment_id,
            "amount": str(to_money(r.amount)),
            "processed_at": r.processed_at.isoformat(),
            "approved_by": r.approved_by,
            "invoice_status": inv.status.value,
        }


def list_refunds_flat(pending_only: bool = False) -> list[dict]:
    with db_session() as s:
        q = select(Refund).order_by(Refund.created_at.desc())
        if pending_only:
            q = q.where(Refund.processed_at.is_(None))
        return [
            {
                "id": r.id,
                "payment_id": r.payment_id,
                "amount": str(to_money(r.amount)),
                "reason": r.reason,
                "processed_at": r.processed_at.isoformat() if r.processed_at else None,
                "approved_by": r.approved_by,
            }
            for r in s.scalars(q)
        ]


def billing_stats() -> dict:
    """Riepilogo: incassato, da incassare, fatture per stato."""
    with db_session() as s:
        collected = s.execute(select(func.coalesce(func.sum(Payment.amount), 0))).scalar_one()
        outstanding = s.execute(
            select(func.coalesce(func.sum(Invoice.balance_due), 0)).where(Invoice.status.not_in(CLOSED_STATUSES))
        ).scalar_one()
        by_status = dict(s.execute(select(Invoice.status, func.count()).group_by(Invoice.status)).all())
    return {
        "collected": str(to_money(collected)),
        "outstanding": str(to_money(outstanding)),
        "invoices": {st.value: by_status.get(st, 0) for st in InvoiceStatus},
    }
