"""
Client del gateway AI (API chat-completions compatibile OpenAI) e prompt clinici.

Errori del gateway:
- 429 -> rate limit
- 402 -> credito esaurito
- altro -> errore generico (dettaglio solo nei log)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

import requests
from sqlalchemy import select

from .ai_access import log_ai_usage, require_ai_access
from .clinical import list_medications_flat, list_vital_signs_flat
from .config import AI_GATEWAY_API_KEY, AI_GATEWAY_URL, AI_MODEL, AI_TIMEOUT_SECONDS
from .db import db_session
from .errors import ClinicError, GatewayError, NotFoundError
from .models import Allergy, EmrNote, Patient

logger = logging.getLogger(__name__)

COST_PER_CALL = 0.001
RECENT_NOTES = 5
NOTE_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class ChatResult:
    content: str
    tokens_used: int = 0


def chat_completion(
    messages: list[dict],
    model: str = AI_MODEL,
    temperature: float | None = None,
    api_key: str | None = None,
) -> ChatResult:
    key = api_key or AI_GATEWAY_API_KEY
    if not key:
        raise GatewayError("AI_GATEWAY_API_KEY is not configured", status_code=500)

    payload: dict = {"model": model, "messages": messages}
    if temperature is not None:
        payload["temperature"] = temperature

    try:
        r = requests.post(
            AI_GATEWAY_URL,
            headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
            json=payload,
            timeout=AI_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.error("AI gateway unreachable: %s", e)
        raise GatewayError("AI gateway unreachable", status_code=502) from e

    if r.status_code == 429:
        raise GatewayError("Rate limits exceeded, please try again later.", status_code=429)
    if r.status_code == 402:
        raise GatewayError("Payment required, please add funds to your AI workspace.", status_code=402)
    if not r.ok:
        logger.error("AI gateway error: %s %s", r.status_code, r.text)
        raise GatewayError("AI gateway error", status_code=500)

    data = r.json()
    choices = data.get("choices") or [{}]
    content = (choices[0].get("message") or {}).get("content") or ""
    tokens = int((data.get("usage") or {}).get("total_tokens") or 0)
    return ChatResult(content=content, tokens_used=tokens)


# =========================
# Prompt clinici
# =========================
ANALYSIS_PROMPTS: dict[str, tuple[str, str]] = {
    "summary": (
        "You are a clinical assistant AI that provides concise, actionable medical summaries. "
        "Focus on key health indicators, trends, and important observations. "
        "Be professional and clinical in tone.",
        "Please provide a comprehensive clinical summary for this patient. Highlight:\n"
        "1. Key health concerns or risk factors\n"
        "2. Medication management insights\n"
        "3. Notable trends or patterns\n"
        "4. Recommended follow-up actions",
    ),
    "recommendations": (
        "You are a clinical decision support AI. Provide evidence-based recommendations "
        "while being clear that final decisions should be made by healthcare professionals.",
        "Based on this patient's clinical data, provide recommendations for:\n"
        "1. Preventive care measures\n"
        "2. Areas requiring closer monitoring\n"
        "3. Potential medication interactions or concerns\n"
        "4. Suggested clinical assessments or tests",
    ),
    "risk_assessment": (
        "You are a medical risk assessment AI. Analyze patient data to identify potential "
        "health risks and areas of concern.",
        "Analyze this patient's data for potential health risks:\n"
        "1. Identify any red flags in medications, allergies, or vitals\n"
        "2. Assess medication interaction risks\n"
        "3. Note any concerning trends\n"
        "4. Highlight areas requiring immediate attention",
    ),
}
DEFAULT_SYSTEM_PROMPT = "You are a helpful clinical AI assistant."


def age_on(dob: date | None, today: date | None = None) -> int | None:
    if not dob:
        return None
    today = today or date.today()
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


def describe_vitals(v: dict) -> str:
    parts = []
    if v.get("blood_pressure_systolic") and v.get("blood_pressure_diastolic"):
        parts.append(f"BP {v['blood_pressure_systolic']}/{v['blood_pressure_diastolic']} mmHg")
    if v.get("heart_rate"):
        parts.append(f"HR {v['heart_rate']} bpm")
    if v.get("temperature"):
        parts.append(f"Temp {v['temperature']} {'C' if v.get('temperature_unit') == 'celsius' else 'F'}")
    if v.get("oxygen_saturation"):
        parts.append(f"SpO2 {v['oxygen_saturation']}%")
    if v.get("respiratory_rate"):
        parts.append(f"RR {v['respiratory_rate']}/min")
    if v.get("bmi"):
        parts.append(f"BMI {v['bmi']}")
    return ", ".join(parts)


def build_patient_context(
    patient: dict,
    allergies: list[dict],
    notes: list[dict],
    total_notes: int = 0,
    medications: list[dict] | None = None,
    vitals: list[dict] | None = None,
) -> str:
    lines = [
        "Patient Overview:",
        f"- Name: {patient.get('first_name')} {patient.get('last_name')}",
        f"- MRN: {patient.get('mrn')}",
        f"- Age: {patient.get('age') or 'Unknown'}",
        f"- Total Clinical Notes: {total_notes}",
        "",
    ]
    if allergies:
        lines.append(f"Allergies ({len(allergies)}):")
        lines += [f"- {a['allergen']} ({a['severity']}): {a.get('reaction') or '-'}" for a in allergies]
    else:
        lines.append("No known allergies recorded.")
    lines.append("")
    if medications:
        lines.append(f"Active Medications ({len(medications)}):")
        lines += [f"- {m['medication_name']}: {m['dosage']} ({m['frequency']})" for m in medications]
    else:
        lines.append("No active medications.")
    lines.append("")
    if notes:
        lines.append("Recent Clinical Notes:")
        lines += [
            f"[{n['created_at'][:10]}] {n['note_type']}: {n['content'][:NOTE_PREVIEW_CHARS]}..."
            for n in notes
        ]
    else:
        lines.append("No recent clinical notes.")
    if vitals:
        lines.append("")
        lines.append("Recent Vital Signs:")
        lines += [f"- {describe_vitals(v)} ({v['recorded_at'][:10]})" for v in vitals]
    return "\n".join(lines)


def build_analysis_prompts(analysis_type: str, context: str) -> tuple[str, str]:
    if analysis_type in ANALYSIS_PROMPTS:
        system, user = ANALYSIS_PROMPTS[analysis_type]
        return system, f"{user}\n\n{context}"
    return DEFAULT_SYSTEM_PROMPT, context


def _load_patient_context(patient_id: str) -> str:
    with db_session() as s:
        p = s.get(Patient, patient_id)
        if not p:
            raise NotFoundError("Patient not found.")
        allergies = [
            {"allergen": a.allergen, "severity": a.severity, "reaction": a.reaction}
            for a in s.scalars(select(Allergy).where(Allergy.patient_id == patient_id))
        ]
        all_notes = list(
            s.scalars(select(EmrNote).where(EmrNote.patient_id == patient_id).order_by(EmrNote.created_at.desc()))
        )
        notes = [
            {"created_at": n.created_at.isoformat(), "note_type": n.note_type.value, "content": n.content}
            for n in all_notes[:RECENT_NOTES]
        ]
        patient = {
            "first_name": p.first_name,
            "last_name": p.last_name,
            "mrn": p.mrn,
            "age": age_on(p.date_of_birth),
        }
    return build_patient_context(
        patient,
        allergies,
        notes,
        total_notes=len(all_notes),
        medications=list_medications_flat(patient_id, active_only=True),
        vitals=list_vital_signs_flat(patient_id),
    )


def clinical_analysis(patient_id: str, analysis_type: str, user_id: str) -> dict:
    """
    Use case: analisi AI della cartella.
    - verifica accesso AI dell'utente
    - costruisce contesto paziente e prompt
    - registra l'uso
    """
    if not analysis_type:
        raise ClinicError("analysis_type is required.")
    require_ai_access(user_id)

    system, user = build_analysis_prompts(analysis_type, _load_patient_context(patient_id))
    result = chat_completion(
        [{"role": "system", "content": system}, {"role": "user", "content": user}],
        temperature=0.7,
    )
    log_ai_usage(
        user_id,
        "clinical_analysis",
        tokens_used=result.tokens_used,
        cost_estimate=COST_PER_CALL,
        metadata={"patient_id": patient_id, "analysis_type": analysis_type},
    )
    return {"analysis_type": analysis_type, "analysis": result.content}
