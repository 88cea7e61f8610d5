"""
Tassonomia degli errori di registrazione.

- ValidationError      : input non valido, nessun side effect (400)
- Conflict             : email/identificativo già usati con ruolo incompatibile (409)
- NotFound / InviteRejected : invito inesistente (404) o non utilizzabile (400)
- ProvisioningDegraded : provider identità in errore, si prosegue con hash locale (mai esposto)
- ProvisioningFailed   : provider identità in errore e fallback locale disabilitato (500)
- StepFailure          : passo critico del saga fallito, compensazione eseguita (500)
- NonFatalStepFailure  : passo non critico fallito, solo log
- CompensationFailure  : una delete di compensazione è fallita, solo log
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class DatastoreError(Exception):
    def __init__(self, table: str, operation: str, detail: str) -> None:
        super().__init__(f"{operation} su '{table}' fallita: {detail}")
        self.table = table
        self.operation = operation
        self.detail = detail


class IdentityProviderError(Exception):
    pass


class RegistrationError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict[str, Any]:
        return {"ok": False, "message": self.message}


class ValidationError(RegistrationError):
    status_code = 400

    def __init__(self, message: str, errors: list[dict[str, str]]) -> None:
        super().__init__(message)
        self.errors = errors

    def to_body(self) -> dict[str, Any]:
        return {"ok": False, "message": self.message, "errors": self.errors}


class Conflict(RegistrationError):
    status_code = 409

    def __init__(self, message: str, existing_roles: list[str] | None = None, identifier: str | None = None) -> None:
        super().__init__(message)
        self.existing_roles = existing_roles or []
        self.identifier = identifier


class NotFound(RegistrationError):
    status_code = 404


class InviteRejected(RegistrationError):
    status_code = 400


class ProvisioningDegraded(Exception):
    """Segnale interno: il provider identità non ha creato l'identità."""


class ProvisioningFailed(RegistrationError):
    status_code = 500


@dataclass(frozen=True)
class CompensationFailure:
    kind: str
    resource_id: str
    error: str


@dataclass
class CompensationReport:
    deleted: list[tuple[str, str]] = field(default_factory=list)
    failures: list[CompensationFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures


class StepFailure(RegistrationError):
    status_code = 500

    def __init__(self, step: str, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.cause = cause
        self.compensation: CompensationReport | None = None
        # fase del flusso al momento del fallimento (registration.Stage)
        self.stage: Any = None


class NonFatalStepFailure(Exception):
    def __init__(self, task: str, cause: BaseException) -> None:
        super().__init__(f"{task}: {cause}")
        self.task = task
        self.cause = cause
