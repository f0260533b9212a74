from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import and_, func, or_, select

from . import auth_models  # noqa: F401  (registra la tabella users nel metadata)
from .auth_models import User
from .billing_service import _issue_invoice
from .config import DEFAULT_TAX_RATE, REGISTRATION_TAX_RATE, TICKET_TOKEN_PREFIX
from .db import Base, db_session, engine
from .errors import ClinicError, NotFoundError
from .models import (
    Appointment,
    AppointmentStatus,
    Package,
    Patient,
    Priority,
    Queue,
    QueueType,
    Service,
)
from .pricing import InvoiceLine
from .queue_service import _active_queue, _enqueue

logger = logging.getLogger(__name__)

REGISTRATION_SERVICE_CODE = "REG"
CONSULTATION_SERVICE_CODE = "CONSULT"


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Crea le tabelle se non esistono."""
    Base.metadata.create_all(bind=engine)


# =========================
# Helper / DTO
# =========================
@dataclass(frozen=True)
class RegistrationOutcome:
    patient_id: str
    mrn: str
    invoice_id: str | None
    token_number: str | None
    message: str


@dataclass(frozen=True)
class BookingOutcome:
    ok: bool
    appointment_id: str | None
    invoice_id: str | None
    message: str


def _next_mrn(s, today: date | None = None) -> str:
    """MRN<anno><progressivo a 6 cifre>, progressivo per anno."""
    year = (today or datetime.utcnow().date()).year
    prefix = f"MRN{year}"
    last = s.execute(
        select(func.max(Patient.mrn)).where(Patient.mrn.like(f"{prefix}%"))
    ).scalar_one_or_none()
    seq = int(last[len(prefix):]) + 1 if last else 1
    return f"{prefix}{seq:06d}"


def _service_by_code(s, code: str) -> Service:
    svc = s.execute(select(Service).where(Service.code == code, Service.is_active.is_(True))).scalar_one_or_none()
    if not svc:
        raise NotFoundError(f"Service '{code}' is not configured.")
    return svc


def _new_patient(
    s,
    first_name: str,
    last_name: str,
    email: str | None = None,
    phone_mobile: str | None = None,
    date_of_birth: date | None = None,
    sex_at_birth: str | None = None,
    national_id: str | None = None,
) -> Patient:
    if not first_name.strip() or not last_name.strip():
        raise ClinicError("First and last name are required.")
    p = Patient(
        mrn=_next_mrn(s),
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        email=email,
        phone_mobile=phone_mobile,
        date_of_birth=date_of_birth,
        sex_at_birth=sex_at_birth,
        national_id=national_id,
    )
    s.add(p)
    s.flush()
    return p


# =========================
# Pazienti
# =========================
def create_patient(
    first_name: str,
    last_name: str,
    email: str | None = None,
    phone_mobile: str | None = None,
    date_of_birth: date | None = None,
    sex_at_birth: str | None = None,
    national_id: str | None = None,
) -> str:
    with db_session() as s:
        return _new_patient(
            s, first_name, last_name, email, phone_mobile, date_of_birth, sex_at_birth, national_id
        ).id


def register_patient(
    first_name: str,
    last_name: str,
    email: str | None = None,
    phone_mobile: str | None = None,
    date_of_birth: date | None = None,
    sex_at_birth: str | None = None,
    national_id: str | None = None,
    registered_by: str | None = None,
) -> RegistrationOutcome:
    """
    Use case: registrazione nuovo paziente.
    - genera MRN
    - emette fattura quota di iscrizione (servizio REG, senza imposta)
    - se esiste una coda triage attiva, accoda il paziente (routine)
    """
    with db_session() as s:
        p = _new_patient(s, first_name, last_name, email, phone_mobile, date_of_birth, sex_at_birth, national_id)

        invoice_id = None
        reg = s.execute(
            select(Service).where(Service.code == REGISTRATION_SERVICE_CODE, Service.is_active.is_(True))
        ).scalar_one_or_none()
        if reg:
            line = InvoiceLine(
                description="Patient Registration Fee",
                quantity=1,
                unit_price=reg.unit_price,
                service_id=reg.id,
            )
            invoice = _issue_invoice(s, p.id, [line], REGISTRATION_TAX_RATE, created_by=registered_by)
            invoice_id = invoice.id
        else:
            logger.warning("Registration service %s missing: no registration invoice", REGISTRATION_SERVICE_CODE)

        token = None
        triage = _active_queue(s, QueueType.TRIAGE, required=False)
        if triage:
            ticket = _enqueue(
                s, triage, p.id, Priority.ROUTINE, notes="Auto-added after registration", prefix=TICKET_TOKEN_PREFIX
            )
            token = ticket.token_number

        msg = f"Patient registered. MRN: {p.mrn}" + (f". Token: {token}" if token else "")
        logger.info(msg)
        return RegistrationOutcome(p.id, p.mrn, invoice_id, token, msg)


def _patient_flat(p: Patient) -> dict:
    return {
        "id": p.id,
        "mrn": p.mrn,
        "first_name": p.first_name,
        "last_name": p.last_name,
        "date_of_birth": p.date_of_birth.isoformat() if p.date_of_birth else None,
        "phone_mobile": p.phone_mobile,
        "email": p.email,
    }


def get_patient_flat(patient_id: str) -> dict:
    with db_session() as s:
        p = s.get(Patient, patient_id)
        if not p:
            raise NotFoundError("Patient not found.")
        return _patient_flat(p)


def list_patients_flat(search: str | None = None, limit: int = 50, offset: int = 0) -> list[dict]:
    """Ricerca case-insensitive su nome, cognome, MRN, telefono."""
    with db_session() as s:
        q = select(Patient).order_by(Patient.last_name, Patient.first_name)
        if search and search.strip():
            like = f"%{search.strip().lower()}%"
            q = q.where(
                or_(
                    func.lower(Patient.first_name).like(like),
                    func.lower(Patient.last_name).like(like),
                    func.lower(Patient.mrn).like(like),
                    Patient.phone_mobile.like(like),
                )
            )
        return [_patient_flat(p) for p in s.scalars(q.offset(offset).limit(limit))]


# =========================
# Listino
# =========================
def list_services_flat() -> list[dict]:
    with db_session() as s:
        rows = s.scalars(select(Service).where(Service.is_active.is_(True)).order_by(Service.name))
        return [
            {"id": r.id, "code": r.code, "name": r.name, "unit_price": str(r.unit_price)}
            for r in rows
        ]


def list_packages_flat() -> list[dict]:
    with db_session() as s:
        rows = s.scalars(select(Package).where(Package.is_active.is_(True)).order_by(Package.name))
        return [
            {
                "id": r.id,
                "code": r.code,
                "name": r.name,
                "bundle_price": str(r.bundle_price),
                "components": r.components,
            }
            for r in rows
        ]


def list_queues_flat() -> list[dict]:
    with db_session() as s:
        rows = s.scalars(select(Queue).where(Queue.is_active.is_(True)).order_by(Queue.name))
        return [
            {"id": q.id, "name": q.name, "queue_type": q.queue_type.value, "sla_minutes": q.sla_minutes}
            for q in rows
        ]


# =========================
# Disponibilità
# =========================
def _slot_free(s, provider_id: str, start: datetime, end: datetime) -> bool:
    """Nessuna sovrapposizione [start,end) con appuntamenti non annullati del medico."""
    overlap = (
        select(Appointment.id)
        .where(
            and_(
                Appointment.provider_id == provider_id,
                Appointment.status != AppointmentStatus.CANCELLED,
                Appointment.scheduled_start < end,
                Appointment.scheduled_end > start,
            )
        )
        .limit(1)
    )
    return s.execute(overlap).first() is None


# =========================
# Prenotazione
# =========================
def book_appointment(
    patient_id: str,
    provider_id: str,
    start: datetime,
    duration_minutes: int = 30,
    source: str = "walk_in",
    notes: str | None = None,
    bill_consultation: bool = True,
    booked_by: str | None = None,
) -> BookingOutcome:
    """
    Use case: prenotare un appuntamento.
    - verifica sovrapposizioni del medico
    - opzionale: emette la fattura della visita (servizio CONSULT)
    """
    end = start + timedelta(minutes=duration_minutes)

    with db_session() as s:
        if not s.get(Patient, patient_id):
            return BookingOutcome(False, None, None, "Patient not found.")
        if not s.get(User, provider_id):
            return BookingOutcome(False, None, None, "Provider not found.")

        if not _slot_free(s, provider_id=provider_id, start=start, end=end):
            return BookingOutcome(False, None, None, "Slot not available for this provider.")

        app = Appointment(
            patient_id=patient_id,
            provider_id=provider_id,
            scheduled_start=start,
            scheduled_end=end,
            status=AppointmentStatus.BOOKED,
            source=source,
            notes=notes,
        )
        s.add(app)
        s.flush()

        invoice_id = None
        if bill_consultation:
            svc = _service_by_code(s, CONSULTATION_SERVICE_CODE)
            line = InvoiceLine(description=svc.name, quantity=1, unit_price=svc.unit_price, service_id=svc.id)
            rate = svc.tax_rate if svc.tax_rate is not None else DEFAULT_TAX_RATE
            invoice = _issue_invoice(s, patient_id, [line], rate, appointment_id=app.id, created_by=booked_by)
            invoice_id = invoice.id

        logger.info("Appointment %s booked for %s", app.id, start.isoformat())
        return BookingOutcome(True, app.id, invoice_id, f"Appointment booked for {start.strftime('%d/%m/%Y %H:%M')}.")


def cancel_appointment(appointment_id: str, reason: str | None = None) -> bool:
    with db_session() as s:
        app = s.get(Appointment, appointment_id)
        if not app or app.status == AppointmentStatus.CANCELLED:
            return False
        app.status = AppointmentStatus.CANCELLED
        if reason:
            app.notes = f"{app.notes or ''}\nCancelled: {reason}".strip()
        return True


def daily_agenda_flat(provider_id: str, day: date) -> list[dict]:
    start_day = datetime.combine(day, datetime.min.time())
    end_day = start_day + timedelta(days=1)

    with db_session() as s:
        q = (
            select(
                Appointment.id,
                Appointment.scheduled_start,
                Appointment.scheduled_end,
                Appointment.status,
                Appointment.notes,
                Patient.first_name,
                Patient.last_name,
                Patient.mrn,
            )
            .join(Patient, Patient.id == Appointment.patient_id)
            .where(
                and_(
                    Appointment.provider_id == provider_id,
                    Appointment.scheduled_start >= start_day,
                    Appointment.scheduled_start < end_day,
                    Appointment.status != AppointmentStatus.CANCELLED,
                )
            )
            .order_by(Appointment.scheduled_start.asc())
        )
        return [
            {
                "id": r.id,
                "start": r.scheduled_start.strftime("%H:%M"),
                "end": r.scheduled_end.strftime("%H:%M"),
                "status": r.status.value,
                "patient": f"{r.first_name} {r.last_name}",
                "mrn": r.mrn,
                "notes": r.notes,
            }
            for r in s.execute(q).all()
        ]
