import unittest
from datetime import datetime

from clinic_emr.db import Base, engine
from clinic_emr.errors import ClinicError
from clinic_emr.seed import seed_base
from clinic_emr.services import create_patient, get_patient_flat, init_db, register_patient


class PatientTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        init_db()
        seed_base()

    def test_mrn_sequence_uses_utc_year(self):
        prefix = f"MRN{datetime.utcnow().year}"
        first = get_patient_flat(create_patient("Ada", "Lovelace"))
        second = get_patient_flat(register_patient("Grace", "Hopper").patient_id)

        self.assertEqual(first["mrn"], f"{prefix}000001")
        self.assertEqual(second["mrn"], f"{prefix}000002")

    def test_names_are_trimmed_and_required(self):
        p = get_patient_flat(create_patient("  Ada ", " Lovelace "))
        self.assertEqual((p["first_name"], p["last_name"]), ("Ada", "Lovelace"))

        with self.assertRaisesRegex(ClinicError, "First and last name"):
            create_patient("Ada", "  ")
        with self.assertRaisesRegex(ClinicError, "First and last name"):
            register_patient(" ", "Hopper")


if __name__ == "__main__":
    unittest.main()
