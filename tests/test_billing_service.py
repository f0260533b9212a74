import unittest
from datetime import datetime
from decimal import Decimal

from clinic_emr import billing_service
from clinic_emr.db import Base, db_session, engine
from clinic_emr.errors import ClinicError, CouponError, InvalidTransitionError, NotFoundError
from clinic_emr.models import DiscountPolicy, DiscountType
from clinic_emr.pricing import InvoiceLine
from clinic_emr.seed import seed_base
from clinic_emr.services import create_patient, init_db, list_packages_flat, register_patient


def _reset_db():
    Base.metadata.drop_all(bind=engine)
    init_db()
    seed_base()


def _add_coupon(code, **kwargs):
    with db_session() as s:
        s.add(
            DiscountPolicy(
                code=code,
                name=code.title(),
                discount_type=kwargs.pop("discount_type", DiscountType.FIXED),
                discount_value=kwargs.pop("discount_value", Decimal("5")),
                valid_from=kwargs.pop("valid_from", datetime(2024, 1, 1)),
                **kwargs,
            )
        )


class InvoiceTests(unittest.TestCase):
    def setUp(self):
        _reset_db()
        self.patient = create_patient("Ada", "Lovelace")

    def test_registration_invoice_has_no_tax(self):
        outcome = register_patient("Grace", "Hopper")
        inv = billing_service.get_invoice_flat(outcome.invoice_id)
        self.assertEqual(inv["status"], "issued")
        self.assertEqual(inv["subtotal"], "25.00")
        self.assertEqual(inv["tax_amount"], "0.00")
        self.assertEqual(inv["total_amount"], "25.00")
        self.assertEqual(inv["lines"][0]["description"], "Patient Registration Fee")

    def test_service_invoice_with_capped_percentage_coupon(self):
        inv = billing_service.create_invoice(
            self.patient, [InvoiceLine("Minor surgery", 1, Decimal("300"))], coupon_code="welcome10"
        )
        self.assertEqual(inv["discount_code"], "WELCOME10")
        self.assertEqual(inv["discount_amount"], "20.00")
        self.assertEqual(inv["tax_amount"], "28.00")
        self.assertEqual(inv["total_amount"], "308.00")
        self.assertEqual(inv["balance_due"], "308.00")

    def test_coupon_usage_limit(self):
        _add_coupon("ONCE", usage_limit=1)
        line = InvoiceLine("Consultation", 1, Decimal("50"))
        billing_service.create_invoice(self.patient, [line], coupon_code="ONCE")

        with self.assertRaisesRegex(CouponError, "usage limit"):
            billing_service.create_invoice(self.patient, [line], coupon_code="ONCE")

    def test_unknown_or_inactive_coupon(self):
        _add_coupon("OFF", is_active=False)
        with self.assertRaisesRegex(CouponError, "does not exist"):
            billing_service.validate_coupon("NOPE", Decimal("10"))
        with self.assertRaisesRegex(CouponError, "does not exist"):
            billing_service.validate_coupon("OFF", Decimal("10"))

    def test_validate_coupon_preview(self):
        _add_coupon("FLAT15", discount_value=Decimal("15"))
        preview = billing_service.validate_coupon("flat15", Decimal("10"))
        self.assertEqual(preview["code"], "FLAT15")
        self.assertEqual(preview["type"], "fixed")
        self.assertEqual(preview["amount"], "10.00")

    def test_package_invoice(self):
        basic = next(p for p in list_packages_flat() if p["code"] == "PKG-BASIC")
        inv = billing_service.create_package_invoice(self.patient, [(basic["id"], 2)])
        self.assertEqual(inv["subtotal"], "240.00")
        self.assertEqual(inv["tax_amount"], "36.00")
        self.assertEqual(inv["total_amount"], "276.00")
        self.assertEqual(inv["lines"][0]["item_type"], "package")

        with self.assertRaisesRegex(ClinicError, "already in the invoice"):
            billing_service.create_package_invoice(self.patient, [(basic["id"], 1), (basic["id"], 1)])
        with self.assertRaises(ClinicError):
            billing_service.create_package_invoice(self.patient, [])

    def test_unknown_patient(self):
        with self.assertRaises(NotFoundError):
            billing_service.create_invoice("missing", [InvoiceLine("X", 1, Decimal("1"))])


class PaymentTests(unittest.TestCase):
    def setUp(self):
        _reset_db()
        self.patient = create_patient("Ada", "Lovelace")
        self.invoice = billing_service.create_invoice(
            self.patient, [InvoiceLine("Consultation", 1, Decimal("100"))], tax_rate=Decimal("0")
        )

    def test_partial_then_full_payment(self):
        inv = billing_service.record_payment(self.invoice["id"], Decimal("40"), method="card")
        self.assertEqual(inv["status"], "partial")
        self.assertEqual(inv["balance_due"], "60.00")

        inv = billing_service.record_payment(self.invoice["id"], Decimal("60"))
        self.assertEqual(inv["status"], "paid")
        self.assertEqual(inv["balance_due"], "0.00")
        self.assertEqual(len(billing_service.list_payments_flat(self.invoice["id"])), 2)

    def test_payment_validation(self):
        with self.assertRaises(ClinicError):
            billing_service.record_payment(self.invoice["id"], Decimal("0"))
        with self.assertRaisesRegex(ClinicError, "exceeds balance"):
            billing_service.record_payment(self.invoice["id"], Decimal("100.01"))

    def test_void(self):
        inv = billing_service.void_invoice(self.invoice["id"])
        self.assertEqual(inv["status"], "void")
        with self.assertRaises(InvalidTransitionError):
            billing_service.record_payment(self.invoice["id"], Decimal("10"))

    def test_cannot_void_paid_invoice(self):
        billing_service.record_payment(self.invoice["id"], Decimal("10"))
        with self.assertRaises(InvalidTransitionError):
            billing_service.void_invoice(self.invoice["id"])

    def test_refund_flow(self):
        billing_service.record_payment(self.invoice["id"], Decimal("100"))
        payment = billing_service.list_payments_flat(self.invoice["id"])[0]

        with self.assertRaisesRegex(ClinicError, "between 0.01 and 100.00"):
            billing_service.create_refund(payment["id"], Decimal("150"), "Overcharged")

        refund_id = billing_service.create_refund(payment["id"], Decimal("100"), "Visit cancelled")
        self.assertEqual(len(billing_service.list_refunds_flat(pending_only=True)), 1)

        result = billing_service.process_refund(refund_id)
        self.assertEqual(result["invoice_status"], "refunded")
        self.assertEqual(billing_service.list_refunds_flat(pending_only=True), [])

        with self.assertRaises(InvalidTransitionError):
            billing_service.process_refund(refund_id)

    def test_partial_refund_keeps_invoice_paid(self):
        billing_service.record_payment(self.invoice["id"], Decimal("100"))
        payment = billing_service.list_payments_flat(self.invoice["id"])[0]
        refund_id = billing_service.create_refund(payment["id"], Decimal("30"), "Discount agreed")
        self.assertEqual(billing_service.process_refund(refund_id)["invoice_status"], "paid")

    def test_stats(self):
        billing_service.record_payment(self.invoice["id"], Decimal("40"))
        stats = billing_service.billing_stats()
        self.assertEqual(stats["collected"], "40.00")
        self.assertEqual(stats["outstanding"], "60.00")
        self.assertEqual(stats["invoices"]["partial"], 1)


if __name__ == "__main__":
    unittest.main()
