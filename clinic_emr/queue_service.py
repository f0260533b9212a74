"""
Gestione code (triage -> medico).

Ciclo di vita ticket:
    waiting -> called -> served
    waiting/called -> no_show | cancelled

- "chiama il prossimo": ticket waiting con rank priorità più basso, a parità il più vecchio
- fine triage: ticket triage served + nuovo ticket in coda medico con lo STESSO token
"""
from __future__ import annotations

import logging
from datetime import datetime, time

from sqlalchemy import case, func, or_, select

from .clinical import _add_note
from .config import DISPLAY_WAITING_LIMIT, HISTORY_PAGE_SIZE, TICKET_TOKEN_PREFIX
from .db import db_session
from .errors import ClinicError, InvalidTransitionError, NotFoundError, PaymentRequiredError
from .models import (
    PRIORITY_RANK,
    Appointment,
    Invoice,
    InvoiceStatus,
    NoteType,
    Patient,
    Priority,
    Queue,
    QueueType,
    Ticket,
    TicketStatus,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TicketStatus.WAITING, TicketStatus.CALLED)
PAYMENT_GATED_QUEUES = (QueueType.TRIAGE, QueueType.DOCTOR)

_rank = case(*[(Ticket.priority == p, r) for p, r in PRIORITY_RANK.items()], else_=len(PRIORITY_RANK))


# =========================
# Helper
# =========================
def _start_of_day(now: datetime | None = None) -> datetime:
    return datetime.combine((now or datetime.utcnow()).date(), time.min)


def wait_minutes(created_at: datetime, now: datetime | None = None) -> int:
    return int(((now or datetime.utcnow()) - created_at).total_seconds() // 60)


def _next_token(s, prefix: str, now: datetime | None = None) -> str:
    """
    <prefix><NNN>, progressivo giornaliero per prefisso.
    Calcolato dal massimo già emesso oggi: i token clonati non lo fanno avanzare.
    """
    issued = s.scalars(
        select(Ticket.token_number).where(
            Ticket.token_number.like(f"{prefix}%"),
            Ticket.created_at >= _start_of_day(now),
        )
    )
    seq = 0
    for token in issued:
        tail = token[len(prefix):]
        if tail.isdigit():
            seq = max(seq, int(tail))
    return f"{prefix}{seq + 1:03d}"


def _active_queue(s, queue_type: QueueType, required: bool = True) -> Queue | None:
    q = s.execute(
        select(Queue).where(Queue.queue_type == queue_type, Queue.is_active.is_(True)).order_by(Queue.name).limit(1)
    ).scalar_one_or_none()
    if q is None and required:
        raise NotFoundError(f"No active {queue_type.value} queue found")
    return q


def _get_ticket(s, ticket_id: str) -> Ticket:
    t = s.get(Ticket, ticket_id)
    if not t:
        raise NotFoundError("Ticket not found.")
    return t


def _require_status(t: Ticket, allowed: tuple[TicketStatus, ...], action: str) -> None:
    if t.status not in allowed:
        raise InvalidTransitionError(f"Cannot {action} ticket {t.token_number}: status is '{t.status.value}'.")


def _has_visit_history(s, patient_id: str) -> bool:
    return s.execute(select(Appointment.id).where(Appointment.patient_id == patient_id).limit(1)).first() is not None


def _check_payment(s, patient_id: str) -> None:
    """L'ultima fattura del paziente deve essere pagata prima di triage/medico."""
    last = s.execute(
        select(Invoice.status)
        .where(Invoice.patient_id == patient_id)
        .order_by(Invoice.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()

    if last is None:
        if _has_visit_history(s, patient_id):
            raise PaymentRequiredError(
                "Returning patient needs a consultation fee invoice. "
                "Registration fee is waived for returning patients."
            )
        raise PaymentRequiredError(
            "New patient must have a paid invoice (including registration fee) "
            "before proceeding to triage or doctor queue."
        )
    if last != InvoiceStatus.PAID:
        raise PaymentRequiredError(
            f'Patient invoice status is "{last.value}". '
            "Only patients with paid invoices can proceed to triage or doctor queue."
        )


def _enqueue(
    s,
    queue: Queue,
    patient_id: str,
    priority: Priority,
    notes: str | None = None,
    prefix: str = TICKET_TOKEN_PREFIX,
    token_number: str | None = None,
) -> Ticket:
    t = Ticket(
        queue_id=queue.id,
        patient_id=patient_id,
        token_number=token_number or _next_token(s, prefix),
        status=TicketStatus.WAITING,
        priority=priority,
        notes=notes,
    )
    s.add(t)
    s.flush()
    logger.info("Ticket %s added to queue %s (%s)", t.token_number, queue.name, priority.value)
    return t


def _ticket_flat(t: Ticket, p: Patient, q: Queue, now: datetime | None = None) -> dict:
    waited = wait_minutes(t.created_at, now)
    return {
        "id": t.id,
        "token_number": t.token_number,
        "status": t.status.value,
        "priority": t.priority.value,
        "queue_id": q.id,
        "queue_name": q.name,
        "queue_type": q.queue_type.value,
        "patient_id": p.id,
        "patient_name": p.full_name,
        "mrn": p.mrn,
        "notes": t.notes,
        "created_at": t.created_at.isoformat(),
        "called_at": t.called_at.isoformat() if t.called_at else None,
        "served_at": t.served_at.isoformat() if t.served_at else None,
        "wait_minutes": waited,
        "sla_breach": bool(q.sla_minutes) and waited > q.sla_minutes,
    }


def _ticket_rows():
    return (
        select(Ticket, Patient, Queue)
        .join(Patient, Patient.id == Ticket.patient_id)
        .join(Queue, Queue.id == Ticket.queue_id)
    )


def _flat_by_id(s, ticket_id: str, now: datetime | None = None) -> dict:
    t, p, q = s.execute(_ticket_rows().where(Ticket.id == ticket_id)).one()
    return _ticket_flat(t, p, q, now)


# =========================
# Token
# =========================
def generate_ticket_token(prefix: str = TICKET_TOKEN_PREFIX) -> str:
    with db_session() as s:
        return _next_token(s, prefix)


# =========================
# Accodamento
# =========================
def add_to_queue(
    patient_id: str,
    queue_id: str,
    priority: Priority | str = Priority.ROUTINE,
    notes: str | None = None,
    require_payment: bool = True,
) -> dict:
    """
    Use case: aggiungere un paziente a una coda.
    - triage/medico: richiede ultima fattura pagata
    - genera il token e crea il ticket waiting
    """
    priority = Priority(priority) if isinstance(priority, str) else priority

    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Patient not found.")
        queue = s.get(Queue, queue_id)
        if not queue or not queue.is_active:
            raise NotFoundError("Queue not found or inactive.")

        if require_payment and queue.queue_type in PAYMENT_GATED_QUEUES:
            _check_payment(s, patient_id)

        t = _enqueue(s, queue, patient_id, priority, notes=notes or None)
        return _flat_by_id(s, t.id)


def list_active_tickets(queue_id: str, priority: Priority | str | None = None, only_sla_breaches: bool = False) -> list[dict]:
    """Ticket waiting/called della coda, in ordine di chiamata."""
    now = datetime.utcnow()
    with db_session() as s:
        q = (
            _ticket_rows()
            .where(Ticket.queue_id == queue_id, Ticket.status.in_(ACTIVE_STATUSES))
            .order_by(_rank.asc(), Ticket.created_at.asc())
        )
        if priority:
            q = q.where(Ticket.priority == (Priority(priority) if isinstance(priority, str) else priority))
        items = [_ticket_flat(t, p, qu, now) for t, p, qu in s.execute(q).all()]

    if only_sla_breaches:
        items = [i for i in items if i["sla_breach"]]
    return items


# =========================
# Transizioni
# =========================
def call_next(queue_id: str) -> dict | None:
    """
    Chiama il prossimo: waiting con rank più basso, a parità il più vecchio.
    Coda vuota -> None.
    """
    with db_session() as s:
        t = s.scalars(
            select(Ticket)
            .where(Ticket.queue_id == queue_id, Ticket.status == TicketStatus.WAITING)
            .order_by(_rank.asc(), Ticket.created_at.asc())
            .limit(1)
        ).first()
        if not t:
            return None

        t.status = TicketStatus.CALLED
        t.called_at = datetime.utcnow()
        s.flush()
        logger.info("Called ticket %s", t.token_number)
        return _flat_by_id(s, t.id)


def call_ticket(ticket_id: str) -> dict:
    with db_session() as s:
        t = _get_ticket(s, ticket_id)
        _require_status(t, (TicketStatus.WAITING,), "call")
        t.status = TicketStatus.CALLED
        t.called_at = datetime.utcnow()
        s.flush()
        logger.info("Called ticket %s", t.token_number)
        return _flat_by_id(s, t.id)


def _serve(t: Ticket, served_by: str | None) -> None:
    _require_status(t, ACTIVE_STATUSES, "serve")
    t.status = TicketStatus.SERVED
    t.served_at = datetime.utcnow()
    t.served_by = served_by


def mark_served(ticket_id: str, served_by: str | None = None) -> dict:
    with db_session() as s:
        t = _get_ticket(s, ticket_id)
        _serve(t, served_by)
        s.flush()
        logger.info("Ticket %s served", t.token_number)
        return _flat_by_id(s, t.id)


def mark_no_show(ticket_id: str) -> dict:
    with db_session() as s:
        t = _get_ticket(s, ticket_id)
        _require_status(t, ACTIVE_STATUSES, "mark as no-show")
        t.status = TicketStatus.NO_SHOW
        s.flush()
        logger.info("Ticket %s marked no-show", t.token_number)
        return _flat_by_id(s, t.id)


def cancel_ticket(ticket_id: str) -> dict:
    with db_session() as s:
        t = _get_ticket(s, ticket_id)
        _require_status(t, ACTIVE_STATUSES, "cancel")
        t.status = TicketStatus.CANCELLED
        s.flush()
        return _flat_by_id(s, t.id)


def transfer_ticket(ticket_id: str, target_queue_id: str) -> dict:
    """Sposta il ticket in un'altra coda mantenendo il token; riparte da waiting."""
    with db_session() as s:
        t = _get_ticket(s, ticket_id)
        _require_status(t, ACTIVE_STATUSES, "transfer")
        target = s.get(Queue, target_queue_id)
        if not target or not target.is_active:
            raise NotFoundError("Target queue not found or inactive.")
        if target.id == t.queue_id:
            raise ClinicError("Ticket is already in this queue.")

        t.queue_id = target.id
        t.status = TicketStatus.WAITING
        t.called_at = None
        s.flush()
        logger.info("Ticket %s transferred to %s", t.token_number, target.name)
        return _flat_by_id(s, t.id)


def complete_triage(
    ticket_id: str,
    chief_complaint: str,
    triage_notes: str = "",
    user_id: str | None = None,
) -> dict:
    """
    Use case: fine valutazione triage.
    - nota EMR soggettiva (tag triage, assessment)
    - ticket triage -> served
    - nuovo ticket in coda medico con stesso token e priorità
    Ritorna il nuovo ticket.
    """
    if not chief_complaint or not chief_complaint.strip():
        raise ClinicError("Please enter the patient's chief complaint before completing triage.")
    chief_complaint = chief_complaint.strip()

    with db_session() as s:
        t = _get_ticket(s, ticket_id)
        if s.get(Queue, t.queue_id).queue_type is not QueueType.TRIAGE:
            raise InvalidTransitionError(f"Ticket {t.token_number} is not in a triage queue.")

        _add_note(
            s,
            t.patient_id,
            NoteType.SUBJECTIVE,
            f"**Chief Complaint:** {chief_complaint}\n\n**Triage Notes:**\n{triage_notes}",
            author_id=user_id,
            tags=["triage", "assessment"],
        )
        _serve(t, user_id)

        doctor_queue = _active_queue(s, QueueType.DOCTOR)
        new_ticket = _enqueue(
            s,
            doctor_queue,
            t.patient_id,
            t.priority,
            notes=f"Transferred from triage. Chief complaint: {chief_complaint}",
            token_number=t.token_number,
        )
        logger.info("Triage complete: token %s moved to doctor queue", t.token_number)
        return _flat_by_id(s, new_ticket.id)


# =========================
# Viste
# =========================
def queue_display() -> dict:
    """Tabellone: ticket chiamati + primi N in attesa, su tutte le code attive."""
    now = datetime.utcnow()
    with db_session() as s:
        rows = s.execute(
            _ticket_rows()
            .where(Queue.is_active.is_(True), Ticket.status.in_(ACTIVE_STATUSES))
            .order_by(Ticket.created_at.asc())
        ).all()
        items = [_ticket_flat(t, p, q, now) for t, p, q in rows]

    return {
        "currently_serving": [i for i in items if i["status"] == TicketStatus.CALLED.value],
        "waiting": [i for i in items if i["status"] == TicketStatus.WAITING.value][:DISPLAY_WAITING_LIMIT],
    }


def served_history(
    user_id: str,
    scope: str = "today",
    search: str | None = None,
    page: int = 1,
    page_size: int = HISTORY_PAGE_SIZE,
) -> dict:
    """
    Ticket serviti dall'utente, più recenti prima.
    scope: today (da mezzanotte) | previous (prima di oggi)
    """
    if scope not in ("today", "previous"):
        raise ClinicError("scope must be 'today' or 'previous'")
    page = max(page, 1)
    start = _start_of_day()

    with db_session() as s:
        q = _ticket_rows().where(Ticket.status == TicketStatus.SERVED, Ticket.served_by == user_id)
        q = q.where(Ticket.served_at >= start) if scope == "today" else q.where(Ticket.served_at < start)
        if search and search.strip():
            like = f"%{search.strip().lower()}%"
            q = q.where(
                or_(
                    func.lower(Ticket.token_number).like(like),
                    func.lower(Patient.first_name).like(like),
                    func.lower(Patient.last_name).like(like),
                    func.lower(Patient.mrn).like(like),
                )
            )

        total = s.execute(select(func.count()).select_from(q.subquery())).scalar_one()
        rows = s.execute(
            q.order_by(Ticket.served_at.desc()).offset((page - 1) * page_size).limit(page_size)
        ).all()
        return {
            "items": [_ticket_flat(t, p, qu) for t, p, qu in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
        }


def queue_stats(queue_id: str) -> dict:
    """Conteggi per la testata della coda."""
    with db_session() as s:
        rows = s.execute(
            select(Ticket.status, func.count())
            .where(Ticket.queue_id == queue_id, Ticket.created_at >= _start_of_day())
            .group_by(Ticket.status)
        ).all()
    counts = {status.value: n for status, n in rows}
    return {status.value: counts.get(status.value, 0) for status in TicketStatus}

