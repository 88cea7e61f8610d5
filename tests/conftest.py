from __future__ import annotations

import os
import sys
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from clinic_backend.api_main import create_app  # noqa: E402
from clinic_backend.config import Settings  # noqa: E402
from clinic_backend.container import Container  # noqa: E402
from clinic_backend.datastore import Datastore  # noqa: E402
from clinic_backend.db import Database  # noqa: E402
from clinic_backend.errors import DatastoreError  # noqa: E402


class FlakyDatastore(Datastore):
    """Datastore that fails selected (operation, table) pairs."""

    def __init__(self, database: Database, fail: set[tuple[str, str]] | None = None) -> None:
        super().__init__(database)
        self.fail = set(fail or ())

    def _maybe_fail(self, operation: str, table: str) -> None:
        if (operation, table) in self.fail:
            raise DatastoreError(table, operation, "errore simulato")

    def insert(self, table, row):
        self._maybe_fail("insert", table)
        return super().insert(table, row)

    def insert_many(self, table, rows):
        self._maybe_fail("insert", table)
        return super().insert_many(table, rows)

    def update(self, table, filters, patch):
        self._maybe_fail("update", table)
        return super().update(table, filters, patch)

    def delete(self, table, id_):
        self._maybe_fail("delete", table)
        return super().delete(table, id_)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        app_url="http://clinic.test",
        jwt_secret="test-secret",
    )


@pytest.fixture()
def database(settings) -> Iterator[Database]:
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture()
def container(settings, database) -> Container:
    return Container.build(settings, database=database)


@pytest.fixture()
def datastore(container) -> Datastore:
    return container.datastore


@pytest.fixture()
def make_container(settings, database):
    """Build a container over the shared test database with custom collaborators."""

    def _make(settings_override: Settings | None = None, **kwargs: Any) -> Container:
        fail = kwargs.pop("fail", None)
        if fail is not None:
            kwargs["datastore"] = FlakyDatastore(database, fail)
        return Container.build(settings_override or settings, database=database, **kwargs)

    return _make


@pytest.fixture()
def client(container) -> Iterator[TestClient]:
    with TestClient(create_app(container)) as c:
        yield c


@pytest.fixture()
def make_client(make_container):
    def _make(**kwargs: Any) -> TestClient:
        return TestClient(create_app(make_container(**kwargs)))

    return _make


def registration_body(
    email: str = "ana@example.com",
    role: str = "ADMIN",
    *,
    organization: dict | None = None,
    patient: dict | None = None,
    plan: dict | None = None,
    **extra: Any,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "account": {"email": email, "fullName": "Ana Pérez", "password": "s3cret-pass", "role": role},
    }
    if organization is not None:
        body["organization"] = organization
    if patient is not None:
        body["patient"] = patient
    if plan is not None:
        body["plan"] = plan
    body.update(extra)
    return body
