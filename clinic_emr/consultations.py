from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import select

from . import ai_gateway
from .ai_access import log_ai_usage, require_ai_access
from .auth_models import User
from .db import db_session
from .errors import ClinicError, InvalidTransitionError, NotFoundError
from .models import (
    ConsultationMessage,
    ConsultationPrescription,
    ConsultationStatus,
    OnlineConsultation,
    Patient,
)

logger = logging.getLogger(__name__)

SENDER_TYPES = ("doctor", "patient")

SUMMARY_SYSTEM_PROMPT = (
    "You are a medical AI assistant. Generate a concise clinical consultation summary including: "
    "chief complaint, key symptoms discussed, diagnosis, treatment plan, and follow-up recommendations. "
    "Keep it professional and structured."
)


def _get(s, consultation_id: str) -> OnlineConsultation:
    c = s.get(OnlineConsultation, consultation_id)
    if not c:
        raise NotFoundError("Consultation not found")
    return c


def start_consultation(patient_id: str, doctor_id: str, reason: str | None = None) -> str:
    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Patient not found.")
        if not s.get(User, doctor_id):
            raise NotFoundError("Doctor not found.")
        c = OnlineConsultation(
            patient_id=patient_id,
            doctor_id=doctor_id,
            reason=reason,
            status=ConsultationStatus.ACTIVE,
            started_at=datetime.utcnow(),
        )
        s.add(c)
        s.flush()
        return c.id


def end_consultation(consultation_id: str) -> None:
    with db_session() as s:
        c = _get(s, consultation_id)
        if c.status is not ConsultationStatus.ACTIVE:
            raise InvalidTransitionError(f"Consultation is {c.status.value}.")
        c.status = ConsultationStatus.COMPLETED
        c.ended_at = datetime.utcnow()


def post_message(consultation_id: str, sender_type: str, content: str, message_type: str = "text") -> int:
    if sender_type not in SENDER_TYPES:
        raise ClinicError("sender_type must be 'doctor' or 'patient'")
    if not content or not content.strip():
        raise ClinicError("Message content is required.")
    with db_session() as s:
        c = _get(s, consultation_id)
        if c.status is not ConsultationStatus.ACTIVE:
            raise InvalidTransitionError("Messages can only be sent during an active consultation.")
        m = ConsultationMessage(
            consultation_id=consultation_id, sender_type=sender_type, message_type=message_type, content=content
        )
        s.add(m)
        s.flush()
        return m.id


def list_messages_flat(consultation_id: str) -> list[dict]:
    with db_session() as s:
        q = (
            select(ConsultationMessage)
            .where(ConsultationMessage.consultation_id == consultation_id)
            .order_by(ConsultationMessage.created_at.asc(), ConsultationMessage.id.asc())
        )
        return [
            {
                "id": m.id,
                "sender_type": m.sender_type,
                "message_type": m.message_type,
                "content": m.content,
                "created_at": m.created_at.isoformat(),
            }
            for m in s.scalars(q)
        ]


def add_prescription(
    consultation_id: str,
    medications: list[dict],
    diagnosis: str | None = None,
    instructions: str | None = None,
) -> int:
    with db_session() as s:
        _get(s, consultation_id)
        p = ConsultationPrescription(
            consultation_id=consultation_id,
            medications=medications,
            diagnosis=diagnosis,
            instructions=instructions,
        )
        s.add(p)
        s.flush()
        return p.id


def build_transcript(messages: list[dict]) -> str:
    """Solo messaggi di testo, in ordine cronologico."""
    text = [m for m in messages if m.get("message_type", "text") == "text"]
    text.sort(key=lambda m: m["created_at"])
    return "\n".join(
        f"{'Doctor' if m['sender_type'] == 'doctor' else 'Patient'}: {m['content']}" for m in text
    )


def generate_consultation_summary(consultation_id: str, user_id: str) -> str:
    """
    Use case: riassunto AI del teleconsulto.
    - verifica accesso AI
    - trascrizione + prescrizioni -> gateway
    - salva il riassunto sul teleconsulto e registra l'uso
    """
    require_ai_access(user_id)

    with db_session() as s:
        _get(s, consultation_id)
        prescriptions = [
            {"medications": p.medications, "diagnosis": p.diagnosis, "instructions": p.instructions}
            for p in s.scalars(
                select(ConsultationPrescription).where(ConsultationPrescription.consultation_id == consultation_id)
            )
        ]
    transcript = build_transcript(list_messages_flat(consultation_id))

    result = ai_gateway.chat_completion(
        [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Generate a consultation summary based on this conversation:\n\n{transcript}\n\n"
                    f"Prescriptions: {json.dumps(prescriptions)}"
                ),
            },
        ]
    )
    summary = result.content or "Unable to generate summary"

    log_ai_usage(
        user_id,
        "consultation_summary",
        tokens_used=result.tokens_used,
        cost_estimate=ai_gateway.COST_PER_CALL,
        metadata={"consultation_id": consultation_id},
    )
    with db_session() as s:
        _get(s, consultation_id).ai_summary = summary
    logger.info("Summary stored for consultation %s", consultation_id)
    return summary
