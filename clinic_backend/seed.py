from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from .db import Database
from .models import Appointment, Consultation, Organization, UnregisteredPatient, utcnow

DEMO_ORG_NAME = "Consultorio Demo"
DEMO_IDENTIFIER = "V123"


def seed_base(database: Database) -> None:
    """
    Popola dati minimi (idempotente):
    - un'organizzazione demo
    - un paziente non registrato con una visita e un appuntamento già in storico
    """
    with database.session() as s:
        org = s.execute(select(Organization).where(Organization.name == DEMO_ORG_NAME)).scalar_one_or_none()
        if org is None:
            org = Organization(name=DEMO_ORG_NAME, org_type="CONSULTORIO", contact_email="demo@consultorio.local")
            s.add(org)

        shadow = s.execute(
            select(UnregisteredPatient).where(UnregisteredPatient.identifier == DEMO_IDENTIFIER)
        ).scalar_one_or_none()
        if shadow is None:
            shadow = UnregisteredPatient(first_name="Ana", last_name="Pérez", identifier=DEMO_IDENTIFIER)
            s.add(shadow)
            s.flush()

            s.add(Consultation(unregistered_patient_id=shadow.id, chief_complaint="Controllo pressione"))
            s.add(
                Appointment(
                    unregistered_patient_id=shadow.id,
                    organization_id=org.id,
                    scheduled_at=utcnow() + timedelta(days=7),
                    reason="Visita di controllo",
                )
            )
