from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select

from .db import db_session
from .errors import ClinicError, NotFoundError
from .models import Allergy, EmrNote, Medication, MedicationStatus, NoteType, Patient, VitalSign

ALLERGY_SEVERITIES = ("mild", "moderate", "severe", "life_threatening")
MEDICATION_ROUTES = ("oral", "IV", "IM", "SC", "topical", "inhalation", "rectal", "ophthalmic", "otic")
TEMPERATURE_UNITS = ("celsius", "fahrenheit")
HEIGHT_UNITS = ("cm", "in")
WEIGHT_UNITS = ("kg", "lbs")
RECENT_VITALS = 5


def _add_note(s, patient_id: str, note_type: NoteType, content: str, author_id: str | None, tags: list[str]) -> EmrNote:
    note = EmrNote(patient_id=patient_id, author_id=author_id, note_type=note_type, content=content, tags=tags)
    s.add(note)
    s.flush()
    return note


def add_emr_note(
    patient_id: str,
    note_type: NoteType | str,
    content: str,
    author_id: str | None = None,
    tags: list[str] | None = None,
) -> str:
    if not content or not content.strip():
        raise ClinicError("Note content is required.")
    note_type = NoteType(note_type) if isinstance(note_type, str) else note_type
    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Patient not found.")
        return _add_note(s, patient_id, note_type, content.strip(), author_id, list(tags or [])).id


def list_emr_notes_flat(patient_id: str, limit: int = 50) -> list[dict]:
    with db_session() as s:
        q = (
            select(EmrNote)
            .where(EmrNote.patient_id == patient_id)
            .order_by(EmrNote.created_at.desc())
            .limit(limit)
        )
        return [
            {
                "id": n.id,
                "note_type": n.note_type.value,
                "content": n.content,
                "tags": n.tags,
                "author_id": n.author_id,
                "created_at": n.created_at.isoformat(),
            }
            for n in s.scalars(q)
        ]


def add_allergy(
    patient_id: str,
    allergen: str,
    severity: str = "mild",
    reaction: str | None = None,
    recorded_by: str | None = None,
) -> str:
    if not allergen or not allergen.strip():
        raise ClinicError("Allergen is required.")
    if severity not in ALLERGY_SEVERITIES:
        raise ClinicError(f"Severity must be one of: {', '.join(ALLERGY_SEVERITIES)}")
    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Patient not found.")
        a = Allergy(
            patient_id=patient_id,
            allergen=allergen.strip(),
            severity=severity,
            reaction=reaction,
            recorded_by=recorded_by,
        )
        s.add(a)
        s.flush()
        return a.id


def list_allergies_flat(patient_id: str) -> list[dict]:
    with db_session() as s:
        q = select(Allergy).where(Allergy.patient_id == patient_id).order_by(Allergy.created_at.desc())
        return [
            {"id": a.id, "allergen": a.allergen, "severity": a.severity, "reaction": a.reaction}
            for a in s.scalars(q)
        ]


# =========================
# Terapie
# =========================
def _medication_flat(m: Medication) -> dict:
    return {
        "id": m.id,
        "medication_name": m.medication_name,
        "dosage": m.dosage,
        "frequency": m.frequency,
        "route": m.route,
        "start_date": m.start_date.isoformat(),
        "end_date": m.end_date.isoformat() if m.end_date else None,
        "status": m.status.value,
        "notes": m.notes,
        "prescribed_by": m.prescribed_by,
    }


def add_medication(
    patient_id: str,
    medication_name: str,
    dosage: str,
    frequency: str,
    start_date: date,
    route: str | None = None,
    end_date: date | None = None,
    status: MedicationStatus | str = MedicationStatus.ACTIVE,
    notes: str | None = None,
    prescribed_by: str | None = None,
) -> str:
    if not (medication_name or "").strip() or not (dosage or "").strip() or not (frequency or "").strip():
        raise ClinicError("Please fill in all required fields")
    if route and route not in MEDICATION_ROUTES:
        raise ClinicError(f"Route must be one of: {', '.join(MEDICATION_ROUTES)}")
    if end_date and end_date < start_date:
        raise ClinicError("End date cannot be before start date.")
    status = MedicationStatus(status) if isinstance(status, str) else status

    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Patient not found.")
        m = Medication(
            patient_id=patient_id,
            prescribed_by=prescribed_by,
            medication_name=medication_name.strip(),
            dosage=dosage.strip(),
            frequency=frequency.strip(),
            route=route or None,
            start_date=start_date,
            end_date=end_date,
            status=status,
            notes=notes or None,
        )
        s.add(m)
        s.flush()
        return m.id


def set_medication_status(medication_id: str, status: MedicationStatus | str) -> dict:
    status = MedicationStatus(status) if isinstance(status, str) else status
    with db_session() as s:
        m = s.get(Medication, medication_id)
        if not m:
            raise NotFoundError("Medication not found.")
        m.status = status
        return _medication_flat(m)


def list_medications_flat(patient_id: str, active_only: bool = False) -> list[dict]:
    with db_session() as s:
        q = select(Medication).where(Medication.patient_id == patient_id).order_by(Medication.created_at.desc())
        if active_only:
            q = q.where(Medication.status == MedicationStatus.ACTIVE)
        return [_medication_flat(m) for m in s.scalars(q)]


# =========================
# Parametri vitali
# =========================
def compute_bmi(height, weight, height_unit: str = "cm", weight_unit: str = "kg") -> Decimal | None:
    """BMI = kg / m², con conversione da in / lbs."""
    if not height or not weight:
        return None
    height, weight = Decimal(str(height)), Decimal(str(weight))
    meters = height / 100 if height_unit == "cm" else height * Decimal("0.0254")
    kg = weight if weight_unit == "kg" else weight * Decimal("0.453592")
    return (kg / (meters * meters)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _vital_flat(v: VitalSign) -> dict:
    def _num(x):
        return str(x) if x is not None else None

    return {
        "id": v.id,
        "blood_pressure_systolic": v.blood_pressure_systolic,
        "blood_pressure_diastolic": v.blood_pressure_diastolic,
        "heart_rate": v.heart_rate,
        "temperature": _num(v.temperature),
        "temperature_unit": v.temperature_unit,
        "oxygen_saturation": v.oxygen_saturation,
        "respiratory_rate": v.respiratory_rate,
        "height": _num(v.height),
        "height_unit": v.height_unit,
        "weight": _num(v.weight),
        "weight_unit": v.weight_unit,
        "bmi": _num(v.bmi),
        "notes": v.notes,
        "recorded_at": v.recorded_at.isoformat(),
    }


def record_vital_signs(
    patient_id: str,
    blood_pressure_systolic: int | None = None,
    blood_pressure_diastolic: int | None = None,
    heart_rate: int | None = None,
    temperature: Decimal | None = None,
    temperature_unit: str = "celsius",
    oxygen_saturation: int | None = None,
    respiratory_rate: int | None = None,
    height: Decimal | None = None,
    height_unit: str = "cm",
    weight: Decimal | None = None,
    weight_unit: str = "kg",
    notes: str | None = None,
    recorded_by: str | None = None,
) -> dict:
    """Registra una rilevazione; il BMI è calcolato se presenti altezza e peso."""
    if temperature_unit not in TEMPERATURE_UNITS or height_unit not in HEIGHT_UNITS or weight_unit not in WEIGHT_UNITS:
        raise ClinicError("Unsupported unit of measure.")
    readings = (
        blood_pressure_systolic,
        blood_pressure_diastolic,
        heart_rate,
        temperature,
        oxygen_saturation,
        respiratory_rate,
        height,
        weight,
    )
    if all(r is None for r in readings):
        raise ClinicError("Please enter at least one vital sign.")

    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Patient not found.")
        v = VitalSign(
            patient_id=patient_id,
            recorded_by=recorded_by,
            blood_pressure_systolic=blood_pressure_systolic,
            blood_pressure_diastolic=blood_pressure_diastolic,
            heart_rate=heart_rate,
            temperature=temperature,
            temperature_unit=temperature_unit,
            oxygen_saturation=oxygen_saturation,
            respiratory_rate=respiratory_rate,
            height=height,
            height_unit=height_unit,
            weight=weight,
            weight_unit=weight_unit,
            bmi=compute_bmi(height, weight, height_unit, weight_unit),
            notes=notes or None,
        )
        s.add(v)
        s.flush()
        return _vital_flat(v)


def list_vital_signs_flat(patient_id: str, limit: int = RECENT_VITALS) -> list[dict]:
    """Rilevazioni più recenti prima."""
    with db_session() as s:
        q = (
            select(VitalSign)
            .where(VitalSign.patient_id == patient_id)
            .order_by(VitalSign.recorded_at.desc())
            .limit(limit)
        )
        return [_vital_flat(v) for v in s.scalars(q)]
