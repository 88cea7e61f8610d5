from __future__ import annotations

from ..config import Settings
from ..datastore import Datastore
from ..db import Database
from ..history import HistoryMigrator, MigrationReport


def relink_all(datastore: Datastore) -> list[tuple[dict, MigrationReport]]:
    """
    Backfill storico: per ogni paziente nato da un profilo non registrato
    ricollega le righe rimaste senza patient_id. Rilanciabile senza effetti.
    """
    migrator = HistoryMigrator(datastore)
    linked = [p for p in datastore.query_many("patients", {}) if p["unregistered_patient_id"]]
    return [(p, migrator.migrate(p["unregistered_patient_id"], p["id"])) for p in linked]


def main() -> None:
    database = Database(Settings.from_env().database_url)
    print("DB:", database.engine.url.database)

    results = relink_all(Datastore(database))
    if not results:
        print("Nessun paziente collegato a un profilo non registrato.")
        return

    for patient, report in results:
        print(f"- {patient['last_name']} {patient['first_name']} ({patient['id']}): {report.total} righe")
        for table, n in sorted(report.moved.items()):
            if n:
                print(f"    {table}: {n}")
        for table, err in sorted(report.errors.items()):
            print(f"    ERRORE {table}: {err}")


if __name__ == "__main__":
    main()
