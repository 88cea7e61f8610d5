from __future__ import annotations

from typing import Any

from sqlalchemy import inspect, select, update
from sqlalchemy.exc import SQLAlchemyError

from .db import Base, Database
from .errors import DatastoreError
from .models import (
    Account,
    Appointment,
    Consultation,
    FamilyGroup,
    Identity,
    Invite,
    Invoice,
    LabResult,
    Notification,
    Organization,
    Patient,
    Prescription,
    Subscription,
    UnregisteredPatient,
)

TABLES: dict[str, type[Base]] = {
    model.__tablename__: model
    for model in (
        Account,
        Appointment,
        Consultation,
        FamilyGroup,
        Identity,
        Invite,
        Invoice,
        LabResult,
        Notification,
        Organization,
        Patient,
        Prescription,
        Subscription,
        UnregisteredPatient,
    )
}


def row_to_dict(obj: Base) -> dict[str, Any]:
    return {attr.key: getattr(obj, attr.key) for attr in inspect(obj).mapper.column_attrs}


class Datastore:
    """
    Accesso ai dati per nome tabella.
    Ogni operazione gira nella sua sessione: la singola riga è atomica,
    una sequenza di operazioni NO.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def _model(self, table: str) -> type[Base]:
        try:
            return TABLES[table]
        except KeyError:
            raise DatastoreError(table, "lookup", f"Tabella sconosciuta: {table}") from None

    @staticmethod
    def _where(model: type[Base], filters: dict[str, Any]) -> list:
        conds = []
        for col, value in filters.items():
            column = getattr(model, col)
            # None nel filtro = IS NULL
            conds.append(column.is_(None) if value is None else column == value)
        return conds

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        model = self._model(table)
        try:
            with self.database.session() as s:
                obj = model(**row)
                s.add(obj)
                s.flush()
                return row_to_dict(obj)
        except SQLAlchemyError as e:
            raise DatastoreError(table, "insert", str(e)) from e

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        model = self._model(table)
        try:
            with self.database.session() as s:
                objs = [model(**row) for row in rows]
                s.add_all(objs)
                s.flush()
                return [row_to_dict(o) for o in objs]
        except SQLAlchemyError as e:
            raise DatastoreError(table, "insert", str(e)) from e

    def update(self, table: str, filters: dict[str, Any], patch: dict[str, Any]) -> int:
        """Ritorna il numero di righe modificate."""
        model = self._model(table)
        if not filters:
            raise DatastoreError(table, "update", "Update senza filtro non consentito.")
        try:
            with self.database.session() as s:
                res = s.execute(
                    update(model).where(*self._where(model, filters)).values(**patch)
                )
                return res.rowcount or 0
        except SQLAlchemyError as e:
            raise DatastoreError(table, "update", str(e)) from e

    def delete(self, table: str, id_: Any) -> bool:
        model = self._model(table)
        try:
            with self.database.session() as s:
                obj = s.get(model, id_)
                if obj is None:
                    return False
                s.delete(obj)
                return True
        except SQLAlchemyError as e:
            raise DatastoreError(table, "delete", str(e)) from e

    def query_one(self, table: str, filters: dict[str, Any]) -> dict[str, Any] | None:
        model = self._model(table)
        try:
            with self.database.session() as s:
                obj = s.scalars(select(model).where(*self._where(model, filters)).limit(1)).first()
                return row_to_dict(obj) if obj is not None else None
        except SQLAlchemyError as e:
            raise DatastoreError(table, "query", str(e)) from e

    def query_many(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        model = self._model(table)
        try:
            with self.database.session() as s:
                objs = s.scalars(select(model).where(*self._where(model, filters)))
                return [row_to_dict(o) for o in objs]
        except SQLAlchemyError as e:
            raise DatastoreError(table, "query", str(e)) from e
