from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select

from .db import db_session
from .models import (
    DiscountPolicy,
    DiscountType,
    NotificationChannel,
    NotificationTemplate,
    Package,
    Queue,
    QueueType,
    Service,
)


def seed_base() -> None:
    """
    Popola dati minimi (idempotente):
    - code (triage, medico, laboratorio, cassa)
    - servizi (iscrizione, visita)
    - pacchetti
    - coupon di benvenuto e template notifiche
    """
    with db_session() as s:
        # Code
        queues = [
            ("Triage", QueueType.TRIAGE, 15),
            ("Doctor", QueueType.DOCTOR, 30),
            ("Laboratory", QueueType.LAB, 45),
            ("Cashier", QueueType.CASHIER, 10),
        ]
        for name, queue_type, sla in queues:
            if s.execute(select(Queue).where(Queue.name == name)).scalar_one_or_none() is None:
                s.add(Queue(name=name, queue_type=queue_type, sla_minutes=sla, is_active=True))

        # Servizi
        services = [
            ("REG", "Patient Registration", Decimal("25.00"), Decimal("0")),
            ("CONSULT", "General Consultation", Decimal("50.00"), None),
            ("LAB-CBC", "Complete Blood Count", Decimal("18.00"), None),
        ]
        for code, name, price, rate in services:
            if s.execute(select(Service).where(Service.code == code)).scalar_one_or_none() is None:
                s.add(Service(code=code, name=name, unit_price=price, tax_rate=rate))

        # Pacchetti
        packages = [
            ("PKG-BASIC", "Basic Health Check", Decimal("120.00"), ["CONSULT", "LAB-CBC"], 30),
            ("PKG-FAMILY", "Family Care", Decimal("300.00"), ["CONSULT"], 365),
        ]
        for code, name, price, components, days in packages:
            if s.execute(select(Package).where(Package.code == code)).scalar_one_or_none() is None:
                s.add(Package(code=code, name=name, bundle_price=price, components=components, validity_days=days))

        if s.execute(select(DiscountPolicy).where(DiscountPolicy.code == "WELCOME10")).scalar_one_or_none() is None:
            s.add(
                DiscountPolicy(
                    code="WELCOME10",
                    name="Welcome discount",
                    discount_type=DiscountType.PERCENTAGE,
                    discount_value=Decimal("10"),
                    max_discount_amount=Decimal("20.00"),
                    valid_from=datetime(2024, 1, 1),
                )
            )

        if s.execute(
            select(NotificationTemplate).where(NotificationTemplate.name == "Appointment reminder")
        ).scalar_one_or_none() is None:
            s.add(
                NotificationTemplate(
                    name="Appointment reminder",
                    channel=NotificationChannel.SMS,
                    event_type="appointment_reminder",
                    body_template="Hello {{first_name}}, this is a reminder of your visit on {{date}}.",
                )
            )
