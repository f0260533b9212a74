import unittest

from clinic_emr import notifications
from clinic_emr.auth_service import create_user
from clinic_emr.db import Base, engine
from clinic_emr.errors import ClinicError, NotFoundError
from clinic_emr.seed import seed_base
from clinic_emr.services import create_patient, init_db


class NotificationTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        init_db()
        seed_base()

    def test_render_template_leaves_unknown_placeholders(self):
        text = notifications.render_template("Hi {{ name }}, see you {{when}}", {"name": "Ada"})
        self.assertEqual(text, "Hi Ada, see you {{when}}")
        self.assertEqual(notifications.personalize("Dear {{first_name}}", "Grace Hopper"), "Dear Grace")

    def test_role_fan_out_is_personalized(self):
        create_user("mario", "secret", role="clinician", first_name="Mario", last_name="Rossi", email="m@clinic.local")
        create_user("laura", "secret", role="clinician", first_name="Laura", last_name="Bianchi")
        create_user("front", "secret", role="reception", first_name="Front")

        result = notifications.send_notification("role", "email", "Hello {{first_name}}", role="clinician")
        self.assertTrue(result["success"])
        self.assertEqual(result["count"], 2)

        by_body = {n["body"]: n for n in result["notifications"]}
        self.assertEqual(set(by_body), {"Hello Mario", "Hello Laura"})
        self.assertEqual(by_body["Hello Mario"]["status"], "delivered")
        self.assertEqual(by_body["Hello Laura"]["status"], "sent")
        self.assertEqual(by_body["Hello Mario"]["metadata"]["role"], "clinician")

    def test_patient_sms_depends_on_phone(self):
        with_phone = create_patient("Ada", "Lovelace", phone_mobile="+390000000")
        without = create_patient("Alan", "Turing")

        result = notifications.send_notification("patient", "sms", "Results ready", recipient_ids=[with_phone, without])
        statuses = {n["recipient_id"]: n["status"] for n in result["notifications"]}
        self.assertEqual(statuses, {with_phone: "delivered", without: "sent"})

    def test_internal_is_always_delivered(self):
        uid = create_user("front", "secret")
        result = notifications.send_notification("user", "internal", "Shift change", recipient_ids=[uid])
        self.assertEqual(result["notifications"][0]["status"], "delivered")
        self.assertIsNotNone(result["notifications"][0]["delivered_at"])

    def test_no_recipients(self):
        with self.assertRaisesRegex(ClinicError, "No recipients found"):
            notifications.send_notification("role", "email", "Hello", role="billing")
        with self.assertRaisesRegex(ClinicError, "No recipients found"):
            notifications.send_notification("patient", "sms", "Hello", recipient_ids=[])

    def test_external_dispatcher(self):
        pid = create_patient("Ada", "Lovelace", email="ada@example.org")
        notifications.send_notification("patient", "email", "Invoice issued", recipient_ids=[pid], dispatch=False)

        pending = notifications.pending_notifications_flat()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0]["status"], "pending")

        self.assertTrue(notifications.mark_dispatched(pending[0]["id"]))
        self.assertFalse(notifications.mark_dispatched(pending[0]["id"]))
        self.assertEqual(notifications.pending_notifications_flat(), [])
        self.assertEqual(notifications.list_notifications_flat(recipient_id=pid)[0]["status"], "delivered")

    def test_send_from_seeded_template(self):
        pid = create_patient("Ada", "Lovelace", phone_mobile="+390000000")
        template = notifications.list_templates_flat("appointment_reminder")[0]

        result = notifications.send_from_template(
            template["id"], "patient", recipient_ids=[pid], context={"date": "2026-10-20", "name": "ignored"}
        )
        n = result["notifications"][0]
        self.assertEqual(n["channel"], "sms")
        self.assertEqual(n["body"], "Hello Ada, this is a reminder of your visit on 2026-10-20.")

    def test_template_names_are_unique(self):
        notifications.create_template("Lab ready", "email", "lab_result", "Dear {{name}}", subject="Results")
        with self.assertRaises(ClinicError):
            notifications.create_template("Lab ready", "sms", "lab_result", "Hi")
        with self.assertRaises(NotFoundError):
            notifications.send_from_template("missing", "patient", recipient_ids=["x"])


if __name__ == "__main__":
    unittest.main()
