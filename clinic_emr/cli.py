from __future__ import annotations

import argparse

from clinic_emr.auth_service import create_user, list_users_flat
from clinic_emr.config import configure_logging
from clinic_emr.notifications import mark_dispatched, pending_notifications_flat
from clinic_emr.queue_service import add_to_queue, call_next, complete_triage, list_active_tickets, mark_served
from clinic_emr.seed import seed_base
from clinic_emr.services import (
    init_db,
    list_packages_flat,
    list_patients_flat,
    list_queues_flat,
    list_services_flat,
    register_patient,
)


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("Database initialised and seed loaded.")


def cmd_create_user(args: argparse.Namespace) -> None:
    uid = create_user(args.username, args.password, role=args.role, first_name=args.first_name, last_name=args.last_name)
    print(f"User created: {uid}")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "patients":
        for p in list_patients_flat(search=args.search):
            print(f"{p['id']} | {p['mrn']} | {p['last_name']} {p['first_name']} | {p['phone_mobile'] or '-'}")
    elif args.entity == "queues":
        for q in list_queues_flat():
            print(f"{q['id']} | {q['name']} ({q['queue_type']}) | SLA {q['sla_minutes'] or '-'} min")
    elif args.entity == "services":
        for sv in list_services_flat():
            print(f"{sv['code']} | {sv['name']} | {sv['unit_price']}")
    elif args.entity == "packages":
        for pk in list_packages_flat():
            print(f"{pk['code']} | {pk['name']} | {pk['bundle_price']}")
    elif args.entity == "users":
        for u in list_users_flat():
            print(f"{u['id']} | {u['username']} | {u['role']}")


def cmd_register(args: argparse.Namespace) -> None:
    outcome = register_patient(args.first_name, args.last_name, args.email, args.phone)
    print(outcome.message)
    if outcome.invoice_id:
        print(f"Registration invoice: {outcome.invoice_id}")


def cmd_enqueue(args: argparse.Namespace) -> None:
    t = add_to_queue(args.patient_id, args.queue_id, priority=args.priority, notes=args.notes)
    print(f"Token {t['token_number']} in {t['queue_name']}")


def cmd_tickets(args: argparse.Namespace) -> None:
    for t in list_active_tickets(args.queue_id):
        flag = " SLA!" if t["sla_breach"] else ""
        print(f"{t['token_number']} | {t['status']} | {t['priority']} | {t['patient_name']} | {t['wait_minutes']} min{flag}")


def cmd_call_next(args: argparse.Namespace) -> None:
    t = call_next(args.queue_id)
    if not t:
        print("No patients waiting.")
        return
    print(f"Now serving {t['token_number']}: {t['patient_name']}")


def cmd_serve(args: argparse.Namespace) -> None:
    t = mark_served(args.ticket_id)
    print(f"Ticket {t['token_number']} served.")


def cmd_complete_triage(args: argparse.Namespace) -> None:
    t = complete_triage(args.ticket_id, args.complaint, triage_notes=args.notes)
    print(f"Token {t['token_number']} moved to {t['queue_name']}.")


def cmd_notifications(args: argparse.Namespace) -> None:
    """
    Dispatcher esterno:
    - legge le notifiche pending
    - le stampa su console
    - opzionale: le marca come inviate
    """
    pending = pending_notifications_flat(limit=args.limit)
    if not pending:
        print("No pending notifications.")
        return

    for n in pending:
        print(f"[{n['id']}] {n['channel']} | {n['created_at']} | {n['recipient_id']} | {n['body']}")
        if args.mark_sent:
            mark_dispatched(n["id"])

    if args.mark_sent:
        print("Notifications marked as sent.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinic-emr", description="Clinic EMR CLI (front desk and dispatcher)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create DB and load seed")
    p_init.set_defaults(func=cmd_init)

    p_user = sub.add_parser("create-user", help="Create staff user")
    p_user.add_argument("--username", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--role", default="reception", choices=["admin", "reception", "clinician", "billing", "manager"])
    p_user.add_argument("--first-name", default=None)
    p_user.add_argument("--last-name", default=None)
    p_user.set_defaults(func=cmd_create_user)

    p_list = sub.add_parser("list", help="List entities")
    p_list.add_argument("entity", choices=["patients", "queues", "services", "packages", "users"])
    p_list.add_argument("--search", default=None)
    p_list.set_defaults(func=cmd_list)

    p_reg = sub.add_parser("register", help="Register patient (MRN, fee invoice, triage token)")
    p_reg.add_argument("--first-name", required=True)
    p_reg.add_argument("--last-name", required=True)
    p_reg.add_argument("--email", default=None)
    p_reg.add_argument("--phone", default=None)
    p_reg.set_defaults(func=cmd_register)

    p_enq = sub.add_parser("enqueue", help="Add patient to a queue")
    p_enq.add_argument("--patient-id", required=True)
    p_enq.add_argument("--queue-id", required=True)
    p_enq.add_argument("--priority", default="routine", choices=["routine", "stat", "vip"])
    p_enq.add_argument("--notes", default=None)
    p_enq.set_defaults(func=cmd_enqueue)

    p_tk = sub.add_parser("tickets", help="Active tickets of a queue, in call order")
    p_tk.add_argument("--queue-id", required=True)
    p_tk.set_defaults(func=cmd_tickets)

    p_next = sub.add_parser("call-next", help="Call next ticket")
    p_next.add_argument("--queue-id", required=True)
    p_next.set_defaults(func=cmd_call_next)

    p_serve = sub.add_parser("serve", help="Mark ticket as served")
    p_serve.add_argument("--ticket-id", required=True)
    p_serve.set_defaults(func=cmd_serve)

    p_tri = sub.add_parser("complete-triage", help="Close triage and hand over to doctor queue")
    p_tri.add_argument("--ticket-id", required=True)
    p_tri.add_argument("--complaint", required=True)
    p_tri.add_argument("--notes", default="")
    p_tri.set_defaults(func=cmd_complete_triage)

    p_not = sub.add_parser("notifications", help="Read and dispatch pending notifications")
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--mark-sent", action="store_true", help="Mark as sent after printing")
    p_not.set_defaults(func=cmd_notifications)

    return p


def main() -> None:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args()
    init_db()  # garantisce tabelle
    try:
        args.func(args)
    except ValueError as e:
        parser.exit(1, f"Error: {e}\n")


if __name__ == "__main__":
    main()
