from __future__ import annotations

import argparse

from sqlalchemy import select

from .config import Settings
from .container import Container
from .logging_setup import configure_logging
from .models import Account, Consultation, Invite, Organization, Patient, UnregisteredPatient
from .seed import seed_base
from .tools.relink_history import relink_all


def cmd_init(c: Container, args: argparse.Namespace) -> None:
    seed_base(c.database)
    print("DB inizializzato e seed completato.")


def cmd_list(c: Container, args: argparse.Namespace) -> None:
    with c.database.session() as s:
        if args.entity == "accounts":
            for a in s.scalars(select(Account).order_by(Account.email, Account.role)):
                print(f"{a.id} | {a.email} | {a.role} | auth={a.auth_id or '-'}")
        elif args.entity == "organizations":
            for o in s.scalars(select(Organization).order_by(Organization.name)):
                print(f"{o.id} | {o.name} | {o.org_type}")
        elif args.entity == "patients":
            for p in s.scalars(select(Patient).order_by(Patient.last_name, Patient.first_name)):
                print(f"{p.id} | {p.last_name} {p.first_name} | {p.identifier or '-'}")
        elif args.entity == "unregistered":
            for u in s.scalars(select(UnregisteredPatient).order_by(UnregisteredPatient.last_name)):
                print(f"{u.id} | {u.last_name} {u.first_name} | {u.identifier or '-'}")
        elif args.entity == "invites":
            for i in s.scalars(select(Invite).order_by(Invite.created_at)):
                stato = "usato" if i.used else f"scade {i.expires_at:%d/%m/%Y}"
                print(f"{i.token} | org={i.organization_id} | {i.role} | {stato}")


def cmd_add_unregistered(c: Container, args: argparse.Namespace) -> None:
    row = c.datastore.insert(
        "unregistered_patients",
        {
            "first_name": args.first_name,
            "last_name": args.last_name,
            "identifier": args.identifier,
            "phone": args.phone,
            "email": args.email,
        },
    )
    print(f"Paziente non registrato creato: {row['id']}")


def cmd_add_consultation(c: Container, args: argparse.Namespace) -> None:
    row = c.datastore.insert(
        Consultation.__tablename__,
        {"unregistered_patient_id": args.unregistered_id, "chief_complaint": args.motivo},
    )
    print(f"Visita registrata: {row['id']}")


def cmd_notifications(c: Container, args: argparse.Namespace) -> None:
    """
    Simula il sistema di invio esterno:
    - legge notifiche pendenti
    - le stampa su console
    - le marca come inviate
    """
    pendenti = c.notifier.pending(limit=args.limit)
    if not pendenti:
        print("Nessuna notifica pendente.")
        return

    for n in pendenti:
        print(f"[{n.id}] {n.template_kind.value} | {n.recipient} | {n.created_at.isoformat()} | {n.message}")
        if args.mark_sent:
            c.notifier.mark_sent(n.id)

    if args.mark_sent:
        print("Notifiche marcate come inviate.")


def cmd_relink_history(c: Container, args: argparse.Namespace) -> None:
    """Rilancia lo spostamento dello storico per ogni paziente collegato (idempotente)."""
    results = relink_all(c.datastore)
    if not results:
        print("Nessun paziente collegato a un profilo non registrato.")
        return

    for p, report in results:
        errori = f" | errori: {', '.join(sorted(report.errors))}" if report.errors else ""
        print(f"{p['id']} <- {p['unregistered_patient_id']}: {report.total} righe{errori}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinic_cli", description="CLI amministrativa (registrazioni, storico, notifiche)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea DB e carica seed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="Lista entità")
    p_list.add_argument("entity", choices=["accounts", "organizations", "patients", "unregistered", "invites"])
    p_list.set_defaults(func=cmd_list)

    p_unreg = sub.add_parser("add-unregistered-patient", help="Crea profilo paziente non registrato")
    p_unreg.add_argument("--first-name", required=True)
    p_unreg.add_argument("--last-name", required=True)
    p_unreg.add_argument("--identifier", default=None)
    p_unreg.add_argument("--phone", default=None)
    p_unreg.add_argument("--email", default=None)
    p_unreg.set_defaults(func=cmd_add_unregistered)

    p_cons = sub.add_parser("add-consultation", help="Registra una visita su un profilo non registrato")
    p_cons.add_argument("--unregistered-id", required=True)
    p_cons.add_argument("--motivo", default=None)
    p_cons.set_defaults(func=cmd_add_consultation)

    p_not = sub.add_parser("notifications", help="Legge e invia notifiche pendenti (simulazione)")
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--mark-sent", action="store_true", help="Marca come inviate dopo averle stampate")
    p_not.set_defaults(func=cmd_notifications)

    p_relink = sub.add_parser("relink-history", help="Ricollega lo storico dei profili non registrati")
    p_relink.set_defaults(func=cmd_relink_history)

    return p


def main(argv: list[str] | None = None, container: Container | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if container is None:
        settings = Settings.from_env()
        configure_logging(settings)
        container = Container.build(settings)
    container.database.create_all()  # garantisce tabelle
    args.func(container, args)


if __name__ == "__main__":
    main()
