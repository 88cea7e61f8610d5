from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .datastore import Datastore
from .db import Database
from .identity import IdentityProvider, build_identity_provider
from .invites import InviteAcceptanceService
from .notifications import NotificationDispatcher
from .registration import RegistrationService


@dataclass
class Container:
    """Collaboratori dell'applicazione, costruiti una volta per processo (o per test)."""
    settings: Settings
    database: Database
    datastore: Datastore
    identity_provider: IdentityProvider
    notifier: NotificationDispatcher
    registration: RegistrationService
    invites: InviteAcceptanceService

    @classmethod
    def build(
        cls,
        settings: Settings,
        database: Database | None = None,
        datastore: Datastore | None = None,
        identity_provider: IdentityProvider | None = None,
    ) -> "Container":
        database = database or Database(settings.database_url)
        datastore = datastore or Datastore(database)
        identity_provider = identity_provider or build_identity_provider(settings, database)
        notifier = NotificationDispatcher(datastore)
        registration = RegistrationService(datastore, identity_provider, notifier, settings)
        return cls(
            settings=settings,
            database=database,
            datastore=datastore,
            identity_provider=identity_provider,
            notifier=notifier,
            registration=registration,
            invites=InviteAcceptanceService(registration),
        )
