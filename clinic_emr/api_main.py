from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from clinic_emr import ai_access, ai_gateway, billing_service, clinical, consultations, notifications, queue_service
from clinic_emr.auth_models import User, UserRole
from clinic_emr.auth_security import create_access_token, get_subject
from clinic_emr.auth_service import authenticate, create_user, get_user_by_id, list_users_flat
from clinic_emr.config import configure_logging
from clinic_emr.errors import (
    AIAccessDeniedError,
    ClinicError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    PaymentRequiredError,
)
from clinic_emr.pricing import InvoiceLine
from clinic_emr.seed import seed_base
from clinic_emr.services import (
    book_appointment,
    cancel_appointment,
    daily_agenda_flat,
    get_patient_flat,
    init_db,
    list_packages_flat,
    list_patients_flat,
    list_queues_flat,
    list_services_flat,
    register_patient,
)

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

app = FastAPI(title="Clinic EMR API", version="1.0.0")



# Startup

@app.on_event("startup")
def startup() -> None:
    # Crea tabelle (inclusa users) e seed base (idempotente)
    configure_logging()
    init_db()
    seed_base()



# Errori di dominio -> HTTP

def _status_for(e: ClinicError) -> int:
    if isinstance(e, GatewayError):
        return e.status_code
    if isinstance(e, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(e, PaymentRequiredError):
        return status.HTTP_402_PAYMENT_REQUIRED
    if isinstance(e, AIAccessDeniedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(e, InvalidTransitionError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(ClinicError)
async def clinic_error_handler(request: Request, e: ClinicError) -> JSONResponse:
    code = _status_for(e)
    body: dict[str, Any] = {"detail": str(e)}
    if isinstance(e, AIAccessDeniedError):
        body.update(usage=e.usage, limit=e.limit)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, e)
    return JSONResponse(status_code=code, content=body)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, e: ValueError) -> JSONResponse:
    # es. valori enum non validi (priority, method, channel...)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(e)})



# Schemi Auth

class RegisterIn(BaseModel):
    username: str
    password: str
    role: UserRole = UserRole.RECEPTION
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    username: str
    role: str
    is_active: bool



# Schemi Domain

class PatientCreateIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str | None = None
    phone_mobile: str | None = None
    date_of_birth: date | None = None
    sex_at_birth: str | None = None
    national_id: str | None = None


class AppointmentCreateIn(BaseModel):
    patient_id: str
    provider_id: str
    start: datetime
    duration_minutes: int = Field(30, ge=5, le=480)
    source: str = "walk_in"
    notes: str | None = None
    bill_consultation: bool = True


class EnqueueIn(BaseModel):
    patient_id: str
    priority: str = "routine"
    notes: str | None = None


class TransferIn(BaseModel):
    target_queue_id: str


class TriageIn(BaseModel):
    chief_complaint: str
    triage_notes: str = ""


class InvoiceLineIn(BaseModel):
    description: str
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(..., ge=0)
    service_id: str | None = None


class InvoiceCreateIn(BaseModel):
    patient_id: str
    lines: list[InvoiceLineIn]
    tax_rate: Decimal | None = None
    coupon_code: str | None = None
    due_date: date | None = None


class PackageItemIn(BaseModel):
    package_id: str
    quantity: int = Field(1, ge=1)


class PackageInvoiceIn(BaseModel):
    patient_id: str
    packages: list[PackageItemIn]
    coupon_code: str | None = None


class CouponCheckIn(BaseModel):
    code: str
    subtotal: Decimal


class PaymentIn(BaseModel):
    amount: Decimal
    method: str = "cash"
    transaction_ref: str | None = None
    notes: str | None = None


class RefundIn(BaseModel):
    amount: Decimal
    reason: str


class NoteIn(BaseModel):
    note_type: str
    content: str
    tags: list[str] = []


class AllergyIn(BaseModel):
    allergen: str
    severity: str = "mild"
    reaction: str | None = None


class MedicationIn(BaseModel):
    medication_name: str
    dosage: str
    frequency: str
    start_date: date
    route: str | None = None
    end_date: date | None = None
    status: str = "active"
    notes: str | None = None


class MedicationStatusIn(BaseModel):
    status: str


class VitalsIn(BaseModel):
    blood_pressure_systolic: int | None = Field(None, gt=0)
    blood_pressure_diastolic: int | None = Field(None, gt=0)
    heart_rate: int | None = Field(None, gt=0)
    temperature: Decimal | None = None
    temperature_unit: str = "celsius"
    oxygen_saturation: int | None = Field(None, ge=0, le=100)
    respiratory_rate: int | None = Field(None, gt=0)
    height: Decimal | None = Field(None, gt=0)
    height_unit: str = "cm"
    weight: Decimal | None = Field(None, gt=0)
    weight_unit: str = "kg"
    notes: str | None = None


class NotificationIn(BaseModel):
    recipient_type: str
    channel: str
    body: str
    subject: str | None = None
    recipient_ids: list[str] | None = None
    role: str | None = None
    dispatch: bool = True


class TemplateIn(BaseModel):
    name: str
    channel: str
    event_type: str
    body_template: str
    subject: str | None = None


class TemplateSendIn(BaseModel):
    recipient_type: str
    recipient_ids: list[str] | None = None
    role: str | None = None
    context: dict[str, Any] = {}


class AnalysisIn(BaseModel):
    patient_id: str
    analysis_type: str = "summary"


class AIGrantIn(BaseModel):
    user_id: str
    daily_limit: int = Field(100, ge=0)
    daily_token_limit: int = Field(10000, ge=0)


class AILimitsIn(BaseModel):
    ai_enabled: bool | None = None
    daily_limit: int | None = None
    daily_token_limit: int | None = None


class TokensIn(BaseModel):
    amount: int


class ConsultationIn(BaseModel):
    patient_id: str
    doctor_id: str
    reason: str | None = None


class MessageIn(BaseModel):
    sender_type: str
    content: str
    message_type: str = "text"


class PrescriptionIn(BaseModel):
    medications: list[dict[str, Any]]
    diagnosis: str | None = None
    instructions: str | None = None



# Dipendenze auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    # protezione extra: elimina spazi / virgolette accidentali
    token = token.strip().strip('"').strip("'")

    user_id = get_subject(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    u = get_user_by_id(user_id)
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return u


def require_role(*roles: UserRole) -> Callable[..., User]:
    def _dep(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return _dep


require_admin = require_role(UserRole.ADMIN)
require_billing = require_role(UserRole.ADMIN, UserRole.BILLING, UserRole.MANAGER)



# AUTH endpoints

@app.post("/api/auth/register", response_model=dict)
def register(payload: RegisterIn, admin: User = Depends(require_admin)) -> dict[str, Any]:
    # solo l'amministratore crea utenti e assegna il ruolo
    try:
        user_id = create_user(
            payload.username,
            payload.password,
            role=payload.role,
            first_name=payload.first_name,
            last_name=payload.last_name,
            email=payload.email,
        )
        return {"ok": True, "user_id": user_id}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = authenticate(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token = create_access_token(subject=u.id, extra={"username": u.username, "role": u.role.value})
    return TokenOut(access_token=token)


@app.get("/api/me", response_model=MeOut)
def me(user: User = Depends(get_current_user)) -> MeOut:
    return MeOut(id=user.id, username=user.username, role=user.role.value, is_active=user.is_active)


@app.get("/api/users")
def api_users(role: UserRole | None = None, user: User = Depends(get_current_user)) -> list[dict]:
    return list_users_flat(role)



# PUBLIC endpoints (no JWT)

@app.get("/api/public/queue-display")
def api_queue_display() -> dict[str, Any]:
    return queue_service.queue_display()



# Anagrafica e listino

@app.get("/api/patients")
def api_patients(
    search: str | None = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    user: User = Depends(get_current_user),
) -> list[dict]:
    return list_patients_flat(search=search, limit=limit, offset=offset)


@app.post("/api/patients")
def api_register_patient(payload: PatientCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    outcome = register_patient(**payload.model_dump(), registered_by=user.id)
    return {
        "ok": True,
        "patient_id": outcome.patient_id,
        "mrn": outcome.mrn,
        "invoice_id": outcome.invoice_id,
        "token_number": outcome.token_number,
        "message": outcome.message,
    }


@app.get("/api/patients/{patient_id}")
def api_patient(patient_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return get_patient_flat(patient_id)


@app.get("/api/services")
def api_services(user: User = Depends(get_current_user)) -> list[dict]:
    return list_services_flat()


@app.get("/api/packages")
def api_packages(user: User = Depends(get_current_user)) -> list[dict]:
    return list_packages_flat()



# Appuntamenti

@app.post("/api/appointments")
def api_book(payload: AppointmentCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    outcome = book_appointment(**payload.model_dump(), booked_by=user.id)
    return {
        "ok": outcome.ok,
        "message": outcome.message,
        "appointment_id": outcome.appointment_id,
        "invoice_id": outcome.invoice_id,
    }


@app.post("/api/appointments/{appointment_id}/cancel")
def api_cancel_appointment(
    appointment_id: str, reason: str | None = None, user: User = Depends(get_current_user)
) -> dict[str, Any]:
    return {"ok": cancel_appointment(appointment_id, reason=reason)}


@app.get("/api/agenda")
def api_agenda(
    provider_id: str = Query(...),
    day: date = Query(...),
    user: User = Depends(get_current_user),
) -> list[dict]:
    return daily_agenda_flat(provider_id, day)



# Code e ticket

@app.get("/api/queues")
def api_queues(user: User = Depends(get_current_user)) -> list[dict]:
    return list_queues_flat()


@app.get("/api/queues/{queue_id}/tickets")
def api_queue_tickets(
    queue_id: str,
    priority: str | None = None,
    sla_breaches: bool = False,
    user: User = Depends(get_current_user),
) -> list[dict]:
    return queue_service.list_active_tickets(queue_id, priority=priority, only_sla_breaches=sla_breaches)


@app.post("/api/queues/{queue_id}/tickets")
def api_enqueue(queue_id: str, payload: EnqueueIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return queue_service.add_to_queue(payload.patient_id, queue_id, priority=payload.priority, notes=payload.notes)


@app.post("/api/queues/{queue_id}/call-next")
def api_call_next(queue_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    t = queue_service.call_next(queue_id)
    return {"ticket": t, "message": None if t else "No patients waiting"}


@app.get("/api/queues/{queue_id}/stats")
def api_queue_stats(queue_id: str, user: User = Depends(get_current_user)) -> dict[str, int]:
    return queue_service.queue_stats(queue_id)


@app.get("/api/tickets/history")
def api_ticket_history(
    scope: str = "today",
    search: str | None = None,
    page: int = 1,
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    return queue_service.served_history(user.id, scope=scope, search=search, page=page)


@app.post("/api/tickets/{ticket_id}/call")
def api_call_ticket(ticket_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return queue_service.call_ticket(ticket_id)


@app.post("/api/tickets/{ticket_id}/serve")
def api_serve_ticket(ticket_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return queue_service.mark_served(ticket_id, served_by=user.id)


@app.post("/api/tickets/{ticket_id}/no-show")
def api_no_show(ticket_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return queue_service.mark_no_show(ticket_id)


@app.post("/api/tickets/{ticket_id}/cancel")
def api_cancel_ticket(ticket_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return queue_service.cancel_ticket(ticket_id)


@app.post("/api/tickets/{ticket_id}/transfer")
def api_transfer(ticket_id: str, payload: TransferIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return queue_service.transfer_ticket(ticket_id, payload.target_queue_id)


@app.post("/api/tickets/{ticket_id}/complete-triage")
def api_complete_triage(ticket_id: str, payload: TriageIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return queue_service.complete_triage(ticket_id, payload.chief_complaint, payload.triage_notes, user_id=user.id)



# Fatturazione

@app.post("/api/coupons/validate")
def api_validate_coupon(payload: CouponCheckIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return billing_service.validate_coupon(payload.code, payload.subtotal)


@app.post("/api/invoices")
def api_create_invoice(payload: InvoiceCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    lines = [
        InvoiceLine(description=ln.description, quantity=ln.quantity, unit_price=ln.unit_price, service_id=ln.service_id)
        for ln in payload.lines
    ]
    return billing_service.create_invoice(
        payload.patient_id,
        lines,
        tax_rate=payload.tax_rate,
        coupon_code=payload.coupon_code,
        created_by=user.id,
        due_date=payload.due_date,
    )


@app.post("/api/invoices/packages")
def api_create_package_invoice(payload: PackageInvoiceIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return billing_service.create_package_invoice(
        payload.patient_id,
        [(p.package_id, p.quantity) for p in payload.packages],
        coupon_code=payload.coupon_code,
        created_by=user.id,
    )


@app.get("/api/invoices")
def api_invoices(
    patient_id: str | None = None,
    invoice_status: str | None = Query(None, alias="status"),
    limit: int = Query(50, le=200),
    offset: int = 0,
    user: User = Depends(get_current_user),
) -> list[dict]:
    return billing_service.list_invoices_flat(patient_id=patient_id, status=invoice_status, limit=limit, offset=offset)


@app.get("/api/invoices/{invoice_id}")
def api_invoice(invoice_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return billing_service.get_invoice_flat(invoice_id)


@app.post("/api/invoices/{invoice_id}/void")
def api_void_invoice(invoice_id: str, user: User = Depends(require_billing)) -> dict[str, Any]:
    return billing_service.void_invoice(invoice_id)


@app.post("/api/invoices/{invoice_id}/payments")
def api_record_payment(invoice_id: str, payload: PaymentIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return billing_service.record_payment(
        invoice_id,
        payload.amount,
        method=payload.method,
        transaction_ref=payload.transaction_ref,
        notes=payload.notes,
        received_by=user.id,
    )


@app.get("/api/payments")
def api_payments(invoice_id: str | None = None, user: User = Depends(get_current_user)) -> list[dict]:
    return billing_service.list_payments_flat(invoice_id=invoice_id)


@app.post("/api/payments/{payment_id}/refunds")
def api_request_refund(payment_id: str, payload: RefundIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return {"ok": True, "refund_id": billing_service.create_refund(payment_id, payload.amount, payload.reason)}


@app.get("/api/refunds")
def api_refunds(pending_only: bool = False, user: User = Depends(require_billing)) -> list[dict]:
    return billing_service.list_refunds_flat(pending_only=pending_only)


@app.post("/api/refunds/{refund_id}/process")
def api_process_refund(refund_id: str, user: User = Depends(require_billing)) -> dict[str, Any]:
    return billing_service.process_refund(refund_id, approved_by=user.id)


@app.get("/api/billing/stats")
def api_billing_stats(user: User = Depends(require_billing)) -> dict[str, Any]:
    return billing_service.billing_stats()



# Cartella clinica

@app.get("/api/patients/{patient_id}/notes")
def api_notes(patient_id: str, user: User = Depends(get_current_user)) -> list[dict]:
    return clinical.list_emr_notes_flat(patient_id)


@app.post("/api/patients/{patient_id}/notes")
def api_add_note(patient_id: str, payload: NoteIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    nid = clinical.add_emr_note(patient_id, payload.note_type, payload.content, author_id=user.id, tags=payload.tags)
    return {"ok": True, "note_id": nid}


@app.get("/api/patients/{patient_id}/allergies")
def api_allergies(patient_id: str, user: User = Depends(get_current_user)) -> list[dict]:
    return clinical.list_allergies_flat(patient_id)


@app.post("/api/patients/{patient_id}/allergies")
def api_add_allergy(patient_id: str, payload: AllergyIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    aid = clinical.add_allergy(patient_id, payload.allergen, payload.severity, payload.reaction, recorded_by=user.id)
    return {"ok": True, "allergy_id": aid}


@app.get("/api/patients/{patient_id}/medications")
def api_medications(patient_id: str, active_only: bool = False, user: User = Depends(get_current_user)) -> list[dict]:
    return clinical.list_medications_flat(patient_id, active_only=active_only)


@app.post("/api/patients/{patient_id}/medications")
def api_add_medication(patient_id: str, payload: MedicationIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    mid = clinical.add_medication(patient_id, **payload.model_dump(), prescribed_by=user.id)
    return {"ok": True, "medication_id": mid}


@app.patch("/api/medications/{medication_id}")
def api_medication_status(
    medication_id: str, payload: MedicationStatusIn, user: User = Depends(get_current_user)
) -> dict[str, Any]:
    return clinical.set_medication_status(medication_id, payload.status)


@app.get("/api/patients/{patient_id}/vitals")
def api_vitals(patient_id: str, limit: int = Query(5, le=100), user: User = Depends(get_current_user)) -> list[dict]:
    return clinical.list_vital_signs_flat(patient_id, limit=limit)


@app.post("/api/patients/{patient_id}/vitals")
def api_record_vitals(patient_id: str, payload: VitalsIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return clinical.record_vital_signs(patient_id, **payload.model_dump(), recorded_by=user.id)



# Notifiche

@app.post("/api/notifications")
def api_send_notification(payload: NotificationIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return notifications.send_notification(
        payload.recipient_type,
        payload.channel,
        payload.body,
        subject=payload.subject,
        recipient_ids=payload.recipient_ids,
        role=payload.role,
        dispatch=payload.dispatch,
    )


@app.get("/api/notifications")
def api_notifications(recipient_id: str | None = None, user: User = Depends(get_current_user)) -> list[dict]:
    return notifications.list_notifications_flat(recipient_id=recipient_id)


@app.get("/api/notifications/pending")
def api_pending_notifications(limit: int = 200, user: User = Depends(get_current_user)) -> list[dict]:
    return notifications.pending_notifications_flat(limit=limit)


@app.get("/api/notifications/templates")
def api_templates(event_type: str | None = None, user: User = Depends(get_current_user)) -> list[dict]:
    return notifications.list_templates_flat(event_type)


@app.post("/api/notifications/templates")
def api_create_template(payload: TemplateIn, user: User = Depends(require_admin)) -> dict[str, Any]:
    tid = notifications.create_template(
        payload.name, payload.channel, payload.event_type, payload.body_template, subject=payload.subject
    )
    return {"ok": True, "template_id": tid}


@app.post("/api/notifications/templates/{template_id}/send")
def api_send_template(template_id: str, payload: TemplateSendIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return notifications.send_from_template(
        template_id,
        payload.recipient_type,
        recipient_ids=payload.recipient_ids,
        role=payload.role,
        context=payload.context,
    )



# AI

@app.get("/api/ai/access")
def api_ai_access(user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ai_access.check_ai_access(user.id).to_dict()


@app.post("/api/ai/clinical-analysis")
def api_clinical_analysis(payload: AnalysisIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ai_gateway.clinical_analysis(payload.patient_id, payload.analysis_type, user.id)


@app.get("/api/admin/ai-access")
def api_admin_ai_access(user: User = Depends(require_admin)) -> list[dict]:
    return ai_access.list_ai_access_flat()


@app.post("/api/admin/ai-access")
def api_admin_grant(payload: AIGrantIn, user: User = Depends(require_admin)) -> dict[str, Any]:
    ai_access.grant_ai_access(payload.user_id, payload.daily_limit, payload.daily_token_limit)
    return {"ok": True}


@app.patch("/api/admin/ai-access/{user_id}")
def api_admin_update(user_id: str, payload: AILimitsIn, user: User = Depends(require_admin)) -> dict[str, Any]:
    if payload.ai_enabled is not None:
        ai_access.set_ai_enabled(user_id, payload.ai_enabled)
    if payload.daily_limit is not None or payload.daily_token_limit is not None:
        ai_access.update_ai_limits(user_id, payload.daily_limit, payload.daily_token_limit)
    return {"ok": True}


@app.post("/api/admin/ai-access/{user_id}/tokens")
def api_admin_tokens(user_id: str, payload: TokensIn, user: User = Depends(require_admin)) -> dict[str, Any]:
    return {"ok": True, "token_balance": ai_access.add_tokens(user_id, payload.amount)}


@app.get("/api/admin/ai-usage")
def api_admin_usage(days: int = 30, user: User = Depends(require_admin)) -> list[dict]:
    return ai_access.usage_stats(days)



# Teleconsulto

@app.post("/api/consultations")
def api_start_consultation(payload: ConsultationIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    cid = consultations.start_consultation(payload.patient_id, payload.doctor_id, payload.reason)
    return {"ok": True, "consultation_id": cid}


@app.get("/api/consultations/{consultation_id}/messages")
def api_messages(consultation_id: str, user: User = Depends(get_current_user)) -> list[dict]:
    return consultations.list_messages_flat(consultation_id)


@app.post("/api/consultations/{consultation_id}/messages")
def api_post_message(consultation_id: str, payload: MessageIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    mid = consultations.post_message(consultation_id, payload.sender_type, payload.content, payload.message_type)
    return {"ok": True, "message_id": mid}


@app.post("/api/consultations/{consultation_id}/prescriptions")
def api_prescription(consultation_id: str, payload: PrescriptionIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    pid = consultations.add_prescription(consultation_id, payload.medications, payload.diagnosis, payload.instructions)
    return {"ok": True, "prescription_id": pid}


@app.post("/api/consultations/{consultation_id}/end")
def api_end_consultation(consultation_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    consultations.end_consultation(consultation_id)
    return {"ok": True}


@app.post("/api/consultations/{consultation_id}/summary")
def api_consultation_summary(consultation_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return {"summary": consultations.generate_consultation_summary(consultation_id, user.id)}
