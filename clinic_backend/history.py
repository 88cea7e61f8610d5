from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from .datastore import Datastore
from .models import Appointment, Consultation, Invoice, LabResult, Prescription

logger = structlog.get_logger(__name__)

# Tabelle che possono riferire un profilo non registrato
HISTORY_TABLES: tuple[str, ...] = (
    Consultation.__tablename__,
    Appointment.__tablename__,
    Invoice.__tablename__,
    Prescription.__tablename__,
    LabResult.__tablename__,
)


@dataclass
class MigrationReport:
    moved: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.moved.values())


class HistoryMigrator:
    """
    Sposta lo storico dal profilo non registrato al nuovo paziente.
    - solo righe con patient_id ancora NULL (idempotente: rilanciarlo non cambia nulla)
    - ogni tabella è indipendente: un errore non annulla le altre
    """

    def __init__(self, datastore: Datastore, tables: tuple[str, ...] = HISTORY_TABLES) -> None:
        self.datastore = datastore
        self.tables = tables

    def migrate(self, unregistered_patient_id: str, patient_id: str) -> MigrationReport:
        report = MigrationReport()
        for table in self.tables:
            try:
                n = self.datastore.update(
                    table,
                    {"unregistered_patient_id": unregistered_patient_id, "patient_id": None},
                    {"patient_id": patient_id},
                )
            except Exception as e:
                logger.warning(
                    "history_migration_table_failed",
                    table=table,
                    unregistered_patient_id=unregistered_patient_id,
                    error=str(e),
                )
                report.errors[table] = str(e)
                continue
            report.moved[table] = n

        logger.info(
            "history_migrated",
            unregistered_patient_id=unregistered_patient_id,
            patient_id=patient_id,
            moved=report.total,
            failed_tables=sorted(report.errors),
        )
        return report
