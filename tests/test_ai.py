import unittest
from datetime import date
from unittest.mock import MagicMock, patch

from clinic_emr import ai_access, ai_gateway, consultations
from clinic_emr.auth_service import create_user
from clinic_emr.clinical import add_allergy, add_emr_note, add_medication, record_vital_signs
from clinic_emr.db import Base, engine
from clinic_emr.errors import AIAccessDeniedError, GatewayError, InvalidTransitionError
from clinic_emr.seed import seed_base
from clinic_emr.services import init_db, register_patient


def _gateway_response(status_code=200, content="All good", tokens=42):
    r = MagicMock()
    r.status_code = status_code
    r.ok = status_code < 400
    r.text = "error body"
    r.json.return_value = {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"total_tokens": tokens},
    }
    return r


class AIAccessTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        init_db()
        self.user = create_user("doc", "secret", role="clinician")

    def test_no_grant(self):
        status = ai_access.check_ai_access(self.user)
        self.assertFalse(status.allowed)
        self.assertEqual(status.reason, "AI access is not enabled for your account")
        with self.assertRaises(AIAccessDeniedError):
            ai_access.require_ai_access(self.user)

    def test_disabled_by_admin(self):
        ai_access.grant_ai_access(self.user)
        self.assertTrue(ai_access.check_ai_access(self.user).allowed)

        ai_access.set_ai_enabled(self.user, False)
        self.assertEqual(ai_access.check_ai_access(self.user).reason, "AI access has been disabled by an administrator")

    def test_daily_request_limit(self):
        ai_access.grant_ai_access(self.user, daily_limit=1)
        ai_access.log_ai_usage(self.user, "clinical_analysis", tokens_used=10)

        status = ai_access.check_ai_access(self.user)
        self.assertFalse(status.allowed)
        self.assertEqual(status.reason, "Daily AI request limit reached")
        self.assertEqual(status.usage, 1)
        self.assertEqual(status.remaining, 0)

        with self.assertRaises(AIAccessDeniedError) as ctx:
            ai_access.require_ai_access(self.user)
        self.assertEqual(ctx.exception.limit, 1)

    def test_token_limit_and_purchased_balance(self):
        ai_access.grant_ai_access(self.user, daily_token_limit=100)
        ai_access.log_ai_usage(self.user, "clinical_analysis", tokens_used=150)
        self.assertEqual(ai_access.check_ai_access(self.user).reason, "Daily AI token limit reached")

        self.assertEqual(ai_access.add_tokens(self.user, 500), 500)
        self.assertTrue(ai_access.check_ai_access(self.user).allowed)

        # oltre quota: i 50 token scalano dal saldo
        ai_access.log_ai_usage(self.user, "clinical_analysis", tokens_used=50)
        status = ai_access.check_ai_access(self.user)
        self.assertEqual(status.token_balance, 450)
        self.assertEqual(status.tokens_used_today, 200)

    def test_usage_within_daily_quota_keeps_balance(self):
        ai_access.grant_ai_access(self.user, daily_token_limit=1000)
        ai_access.add_tokens(self.user, 100)
        ai_access.log_ai_usage(self.user, "clinical_analysis", tokens_used=300)
        self.assertEqual(ai_access.check_ai_access(self.user).token_balance, 100)

    def test_admin_listing_and_stats(self):
        ai_access.grant_ai_access(self.user)
        ai_access.log_ai_usage(self.user, "consultation_summary", tokens_used=20, cost_estimate=0.001)
        ai_access.log_ai_usage(self.user, "consultation_summary", tokens_used=30, cost_estimate=0.001)

        rows = ai_access.list_ai_access_flat()
        self.assertEqual(rows[0]["username"], "doc")
        self.assertEqual(rows[0]["usage_today"], 2)

        stats = ai_access.usage_stats()
        self.assertEqual(stats, [{"feature_type": "consultation_summary", "requests": 2, "tokens": 50, "cost": "0.0020"}])


class ClinicalAnalysisTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        init_db()
        seed_base()
        self.user = create_user("doc", "secret", role="clinician")
        ai_access.grant_ai_access(self.user)
        self.outcome = register_patient("Grace", "Hopper")
        add_allergy(self.outcome.patient_id, "Penicillin", "severe", "Rash")
        add_emr_note(self.outcome.patient_id, "assessment", "Mild hypertension")
        add_medication(self.outcome.patient_id, "Amlodipine", "5 mg", "once daily", date(2026, 3, 1))
        add_medication(
            self.outcome.patient_id, "Amoxicillin", "500 mg", "every 8 hours", date(2026, 1, 1), status="completed"
        )
        record_vital_signs(
            self.outcome.patient_id, blood_pressure_systolic=150, blood_pressure_diastolic=95, heart_rate=88
        )

    def test_patient_context(self):
        text = ai_gateway.build_patient_context(
            {"first_name": "Grace", "last_name": "Hopper", "mrn": "MRN2026000001", "age": None}, [], []
        )
        self.assertIn("- Age: Unknown", text)
        self.assertIn("No known allergies recorded.", text)
        self.assertIn("No active medications.", text)
        self.assertNotIn("Recent Vital Signs", text)
        self.assertIn("No recent clinical notes.", text)

    @patch("clinic_emr.ai_gateway.requests.post")
    def test_analysis_logs_usage(self, mock_post):
        mock_post.return_value = _gateway_response(content="Monitor blood pressure", tokens=42)

        result = ai_gateway.clinical_analysis(self.outcome.patient_id, "risk_assessment", self.user)
        self.assertEqual(result, {"analysis_type": "risk_assessment", "analysis": "Monitor blood pressure"})

        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(payload["model"], "google/gemini-2.5-flash")
        self.assertIn("medical risk assessment", payload["messages"][0]["content"])
        self.assertIn(self.outcome.mrn, payload["messages"][1]["content"])
        self.assertIn("Penicillin (severe): Rash", payload["messages"][1]["content"])
        self.assertIn("Mild hypertension", payload["messages"][1]["content"])
        self.assertIn("Active Medications (1):\n- Amlodipine: 5 mg (once daily)", payload["messages"][1]["content"])
        self.assertNotIn("Amoxicillin", payload["messages"][1]["content"])
        self.assertIn("BP 150/95 mmHg, HR 88 bpm", payload["messages"][1]["content"])
        self.assertEqual(mock_post.call_args.kwargs["headers"]["Authorization"], "Bearer test-key")

        stats = ai_access.usage_stats()
        self.assertEqual(stats[0]["feature_type"], "clinical_analysis")
        self.assertEqual(stats[0]["tokens"], 42)

    @patch("clinic_emr.ai_gateway.requests.post")
    def test_unknown_type_uses_generic_prompt(self, mock_post):
        mock_post.return_value = _gateway_response()
        ai_gateway.clinical_analysis(self.outcome.patient_id, "other", self.user)
        self.assertEqual(mock_post.call_args.kwargs["json"]["messages"][0]["content"], ai_gateway.DEFAULT_SYSTEM_PROMPT)

    @patch("clinic_emr.ai_gateway.requests.post")
    def test_gateway_errors(self, mock_post):
        mock_post.return_value = _gateway_response(status_code=429)
        with self.assertRaises(GatewayError) as ctx:
            ai_gateway.clinical_analysis(self.outcome.patient_id, "summary", self.user)
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertIn("Rate limits exceeded", str(ctx.exception))

        mock_post.return_value = _gateway_response(status_code=402)
        with self.assertRaises(GatewayError) as ctx:
            ai_gateway.clinical_analysis(self.outcome.patient_id, "summary", self.user)
        self.assertEqual(ctx.exception.status_code, 402)

        mock_post.return_value = _gateway_response(status_code=503)
        with self.assertRaises(GatewayError) as ctx:
            ai_gateway.clinical_analysis(self.outcome.patient_id, "summary", self.user)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(str(ctx.exception), "AI gateway error")

        self.assertEqual(ai_access.usage_stats(), [])

    @patch("clinic_emr.ai_gateway.requests.post")
    def test_denied_user_never_reaches_gateway(self, mock_post):
        other = create_user("nurse", "secret", role="clinician")
        with self.assertRaises(AIAccessDeniedError):
            ai_gateway.clinical_analysis(self.outcome.patient_id, "summary", other)
        mock_post.assert_not_called()


class ConsultationTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        init_db()
        seed_base()
        self.doctor = create_user("doc", "secret", role="clinician")
        ai_access.grant_ai_access(self.doctor)
        patient = register_patient("Grace", "Hopper").patient_id
        self.consultation = consultations.start_consultation(patient, self.doctor, "Follow-up")

    def test_transcript_only_text_in_time_order(self):
        messages = [
            {"sender_type": "patient", "message_type": "text", "content": "Still coughing", "created_at": "2026-01-01T10:02"},
            {"sender_type": "doctor", "message_type": "image", "content": "xray.png", "created_at": "2026-01-01T10:01"},
            {"sender_type": "doctor", "message_type": "text", "content": "How are you?", "created_at": "2026-01-01T10:00"},
        ]
        self.assertEqual(consultations.build_transcript(messages), "Doctor: How are you?\nPatient: Still coughing")

    @patch("clinic_emr.ai_gateway.requests.post")
    def test_summary_is_stored_and_logged(self, mock_post):
        mock_post.return_value = _gateway_response(content="Viral bronchitis, rest.", tokens=80)
        consultations.post_message(self.consultation, "doctor", "How are you?")
        consultations.post_message(self.consultation, "patient", "Still coughing")
        consultations.post_message(self.consultation, "patient", "photo.jpg", message_type="image")
        consultations.add_prescription(
            self.consultation, [{"name": "Paracetamol", "dose": "500mg"}], diagnosis="Bronchitis"
        )

        summary = consultations.generate_consultation_summary(self.consultation, self.doctor)
        self.assertEqual(summary, "Viral bronchitis, rest.")

        prompt = mock_post.call_args.kwargs["json"]["messages"][1]["content"]
        self.assertIn("Doctor: How are you?\nPatient: Still coughing", prompt)
        self.assertNotIn("photo.jpg", prompt)
        self.assertIn("Paracetamol", prompt)
        self.assertEqual(ai_access.usage_stats()[0]["feature_type"], "consultation_summary")

    def test_messages_only_while_active(self):
        consultations.post_message(self.consultation, "doctor", "Hello")
        self.assertEqual(len(consultations.list_messages_flat(self.consultation)), 1)

        consultations.end_consultation(self.consultation)
        with self.assertRaises(InvalidTransitionError):
            consultations.post_message(self.consultation, "patient", "Hello?")
        with self.assertRaises(InvalidTransitionError):
            consultations.end_consultation(self.consultation)


if __name__ == "__main__":
    unittest.main()
