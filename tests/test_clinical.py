import unittest
from datetime import date, timedelta
from decimal import Decimal

from clinic_emr import clinical
from clinic_emr.db import Base, db_session, engine
from clinic_emr.errors import ClinicError, NotFoundError
from clinic_emr.models import VitalSign
from clinic_emr.seed import seed_base
from clinic_emr.services import create_patient, init_db


class ClinicalTestCase(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        init_db()
        seed_base()
        self.patient = create_patient("Ada", "Lovelace")


class MedicationTests(ClinicalTestCase):
    def test_add_and_filter_active(self):
        mid = clinical.add_medication(
            self.patient, "Amlodipine", "5 mg", "once daily", date(2026, 3, 1), route="oral"
        )
        clinical.add_medication(
            self.patient, "Amoxicillin", "500 mg", "every 8 hours", date(2026, 2, 1), status="completed"
        )

        self.assertEqual(len(clinical.list_medications_flat(self.patient)), 2)
        active = clinical.list_medications_flat(self.patient, active_only=True)
        self.assertEqual([m["id"] for m in active], [mid])
        self.assertEqual(active[0]["route"], "oral")

        self.assertEqual(clinical.set_medication_status(mid, "on_hold")["status"], "on_hold")
        self.assertEqual(clinical.list_medications_flat(self.patient, active_only=True), [])

    def test_validation(self):
        with self.assertRaisesRegex(ClinicError, "required fields"):
            clinical.add_medication(self.patient, "Ibuprofen", " ", "as needed", date(2026, 1, 1))
        with self.assertRaisesRegex(ClinicError, "Route"):
            clinical.add_medication(self.patient, "Ibuprofen", "200 mg", "as needed", date(2026, 1, 1), route="nasal")
        with self.assertRaisesRegex(ClinicError, "End date"):
            clinical.add_medication(
                self.patient, "Ibuprofen", "200 mg", "as needed", date(2026, 1, 10), end_date=date(2026, 1, 1)
            )
        with self.assertRaises(NotFoundError):
            clinical.add_medication("missing", "Ibuprofen", "200 mg", "as needed", date(2026, 1, 1))


class VitalSignTests(ClinicalTestCase):
    def test_bmi(self):
        self.assertEqual(clinical.compute_bmi(Decimal("180"), Decimal("81")), Decimal("25.00"))
        self.assertEqual(clinical.compute_bmi(70, 154, height_unit="in", weight_unit="lbs"), Decimal("22.10"))
        self.assertIsNone(clinical.compute_bmi(None, Decimal("81")))

    def test_record_and_list_newest_first(self):
        first = clinical.record_vital_signs(self.patient, blood_pressure_systolic=130, blood_pressure_diastolic=85)
        with db_session() as s:
            v = s.get(VitalSign, first["id"])
            v.recorded_at = v.recorded_at - timedelta(days=1)

        second = clinical.record_vital_signs(self.patient, heart_rate=72, height=Decimal("180"), weight=Decimal("81"))
        self.assertEqual(second["bmi"], "25.00")

        rows = clinical.list_vital_signs_flat(self.patient)
        self.assertEqual([r["id"] for r in rows], [second["id"], first["id"]])
        self.assertEqual(len(clinical.list_vital_signs_flat(self.patient, limit=1)), 1)

    def test_requires_a_reading(self):
        with self.assertRaisesRegex(ClinicError, "at least one vital sign"):
            clinical.record_vital_signs(self.patient, notes="patient refused")
        with self.assertRaisesRegex(ClinicError, "unit"):
            clinical.record_vital_signs(self.patient, temperature=Decimal("37"), temperature_unit="kelvin")


if __name__ == "__main__":
    unittest.main()
