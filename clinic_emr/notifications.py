"""
Notifiche: template e fan-out verso staff (utente / ruolo) o pazienti.

Ogni destinatario produce una riga in notifications_log; il corpo viene
personalizzato con {{name}} e {{first_name}}.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select

from .auth_models import User, UserRole
from .db import db_session
from .errors import ClinicError, NotFoundError
from .models import (
    NotificationChannel,
    NotificationLog,
    NotificationStatus,
    NotificationTemplate,
    Patient,
    RecipientType,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"{{\s*(\w+)\s*}}")


@dataclass(frozen=True)
class Recipient:
    id: str
    name: str = ""
    email: str | None = None
    phone: str | None = None


def render_template(text: str, context: dict[str, Any]) -> str:
    """Sostituisce i {{segnaposto}} noti; quelli sconosciuti restano invariati."""
    def _sub(m: re.Match) -> str:
        key = m.group(1)
        return str(context[key]) if key in context and context[key] is not None else m.group(0)

    return PLACEHOLDER_RE.sub(_sub, text)


def personalize(body: str, name: str) -> str:
    first = name.split(" ")[0] if name else ""
    return render_template(body, {"name": name, "first_name": first})


def _resolve_recipients(
    s,
    recipient_type: RecipientType,
    recipient_ids: list[str] | None,
    role: UserRole | None,
) -> list[Recipient]:
    if recipient_type is RecipientType.ROLE:
        if role is None:
            raise ClinicError("Role is required for role notifications.")
        users = s.scalars(select(User).where(User.role == role, User.is_active.is_(True)))
        return [Recipient(u.id, u.full_name, u.email, u.phone_mobile) for u in users]

    out = []
    for rid in recipient_ids or []:
        if recipient_type is RecipientType.PATIENT:
            p = s.get(Patient, rid)
            out.append(Recipient(rid, p.full_name, p.email, p.phone_mobile) if p else Recipient(rid))
        else:
            u = s.get(User, rid)
            out.append(Recipient(rid, u.full_name, u.email, u.phone_mobile) if u else Recipient(rid))
    return out


def _dispatch(n: NotificationLog, now: datetime | None = None) -> None:
    """
    Invio simulato:
    - internal: sempre delivered
    - email/sms: delivered se il destinatario ha il contatto, altrimenti sent
    """
    now = now or datetime.utcnow()
    meta = n.meta or {}
    n.status = NotificationStatus.SENT
    n.sent_at = now

    if (
        n.channel is NotificationChannel.INTERNAL
        or (n.channel is NotificationChannel.EMAIL and meta.get("recipient_email"))
        or (n.channel is NotificationChannel.SMS and meta.get("recipient_phone"))
    ):
        n.status = NotificationStatus.DELIVERED
        n.delivered_at = now


def _notification_flat(n: NotificationLog) -> dict:
    return {
        "id": n.id,
        "recipient_type": n.recipient_type.value,
        "recipient_id": n.recipient_id,
        "channel": n.channel.value,
        "subject": n.subject,
        "body": n.body,
        "status": n.status.value,
        "metadata": n.meta,
        "created_at": n.created_at.isoformat(),
        "sent_at": n.sent_at.isoformat() if n.sent_at else None,
        "delivered_at": n.delivered_at.isoformat() if n.delivered_at else None,
    }


def send_notification(
    recipient_type: RecipientType | str,
    channel: NotificationChannel | str,
    body: str,
    subject: str | None = None,
    recipient_ids: list[str] | None = None,
    role: UserRole | str | None = None,
    template_id: str | None = None,
    dispatch: bool = True,
) -> dict:
    """
    Use case: invio notifica.
    - risolve i destinatari (ruolo, utenti, pazienti)
    - personalizza il corpo per ciascuno
    - scrive il log; con dispatch=False restano pending per un dispatcher esterno
    """
    recipient_type = RecipientType(recipient_type) if isinstance(recipient_type, str) else recipient_type
    channel = NotificationChannel(channel) if isinstance(channel, str) else channel
    role = UserRole(role) if isinstance(role, str) else role
    if not body or not body.strip():
        raise ClinicError("Notification body is required.")

    with db_session() as s:
        recipients = _resolve_recipients(s, recipient_type, recipient_ids, role)
        if not recipients:
            raise ClinicError("No recipients found")
        logger.info("Sending %s notification to %d %s recipient(s)", channel.value, len(recipients), recipient_type.value)

        rows = []
        for r in recipients:
            n = NotificationLog(
                recipient_type=recipient_type,
                recipient_id=r.id,
                channel=channel,
                subject=subject,
                body=personalize(body, r.name),
                template_id=template_id,
                status=NotificationStatus.PENDING,
                meta={
                    "recipient_email": r.email,
                    "recipient_phone": r.phone,
                    "recipient_name": r.name,
                    "role": role.value if recipient_type is RecipientType.ROLE and role else None,
                },
            )
            if dispatch:
                _dispatch(n)
            s.add(n)
            rows.append(n)
        s.flush()

        return {"success": True, "count": len(rows), "notifications": [_notification_flat(n) for n in rows]}


# =========================
# Template
# =========================
def create_template(
    name: str,
    channel: NotificationChannel | str,
    event_type: str,
    body_template: str,
    subject: str | None = None,
) -> str:
    channel = NotificationChannel(channel) if isinstance(channel, str) else channel
    with db_session() as s:
        if s.execute(select(NotificationTemplate).where(NotificationTemplate.name == name)).scalar_one_or_none():
            raise ClinicError("A template with this name already exists.")
        t = NotificationTemplate(
            name=name, channel=channel, event_type=event_type, subject=subject, body_template=body_template
        )
        s.add(t)
        s.flush()
        return t.id


def list_templates_flat(event_type: str | None = None) -> list[dict]:
    with db_session() as s:
        q = select(NotificationTemplate).where(NotificationTemplate.is_active.is_(True)).order_by(NotificationTemplate.name)
        if event_type:
            q = q.where(NotificationTemplate.event_type == event_type)
        return [
            {
                "id": t.id,
                "name": t.name,
                "channel": t.channel.value,
                "event_type": t.event_type,
                "subject": t.subject,
                "body_template": t.body_template,
            }
            for t in s.scalars(q)
        ]


def send_from_template(
    template_id: str,
    recipient_type: RecipientType | str,
    recipient_ids: list[str] | None = None,
    role: UserRole | str | None = None,
    context: dict[str, Any] | None = None,
) -> dict:
    """Rende subject/body col contesto; {{name}}/{{first_name}} restano per la personalizzazione."""
    with db_session() as s:
        t = s.get(NotificationTemplate, template_id)
        if not t or not t.is_active:
            raise NotFoundError("Template not found.")
        channel, subject, body = t.channel, t.subject, t.body_template

    ctx = {k: v for k, v in (context or {}).items() if k not in ("name", "first_name")}
    return send_notification(
        recipient_type,
        channel,
        render_template(body, ctx),
        subject=render_template(subject, ctx) if subject else None,
        recipient_ids=recipient_ids,
        role=role,
        template_id=template_id,
    )


# =========================
# Dispatcher esterno
# =========================
def pending_notifications_flat(limit: int = 50) -> list[dict]:
    """Notifiche non ancora inviate, più vecchie prima."""
    with db_session() as s:
        q = (
            select(NotificationLog)
            .where(NotificationLog.status == NotificationStatus.PENDING)
            .order_by(NotificationLog.created_at.asc())
            .limit(limit)
        )
        return [_notification_flat(n) for n in s.scalars(q)]


def mark_dispatched(notification_id: str) -> bool:
    with db_session() as s:
        n = s.get(NotificationLog, notification_id)
        if not n or n.status is not NotificationStatus.PENDING:
            return False
        _dispatch(n)
        return True


def list_notifications_flat(recipient_id: str | None = None, limit: int = 100) -> list[dict]:
    with db_session() as s:
        q = select(NotificationLog).order_by(NotificationLog.created_at.desc()).limit(limit)
        if recipient_id:
            q = q.where(NotificationLog.recipient_id == recipient_id)
        return [_notification_flat(n) for n in s.scalars(q)]
