"""
Registrazione account (use case core).

Flusso:
  validazione -> identità esistenti / univocità (solo letture)
  -> provider identità -> saga dei record critici (organizzazione, paziente, account)
  -> task non critici (gruppo familiare, abbonamento, inviti, storico, notifica)
  -> risposta
"""
from __future__ import annotations

import calendar
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, cast

import structlog
from structlog.contextvars import bind_contextvars

from .auth_security import hash_password
from .config import Settings
from .datastore import Datastore
from .errors import Conflict, IdentityProviderError, ProvisioningDegraded, ProvisioningFailed, StepFailure
from .history import HistoryMigrator, MigrationReport
from .identity import Identity, IdentityProvider
from .models import NotificationKind, utcnow
from .notifications import NotificationDispatcher
from .roles import Role, are_compatible, incompatible_roles
from .saga import Created, Saga, TaskOutcome, run_non_critical
from .schemas import PlanIn, RegistrationIntent, parse_registration

logger = structlog.get_logger(__name__)

FAMILY_PLAN = "paciente-family"
FAMILY_MAX_MEMBERS = 5
INVITE_TTL = timedelta(days=14)


class Stage(enum.Enum):
    VALIDATING = "VALIDATING"
    RESOLVING_IDENTITY = "RESOLVING_IDENTITY"
    PROVISIONING = "PROVISIONING"
    CREATING = "CREATING"
    MIGRATING = "MIGRATING"
    NOTIFYING = "NOTIFYING"
    DONE = "DONE"
    COMPENSATING_AND_FAILED = "COMPENSATING_AND_FAILED"


def add_one_month(d: datetime) -> datetime:
    year = d.year + d.month // 12
    month = d.month % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return d.replace(year=year, month=month, day=day)


# =========================
# Risultati tipizzati per fase
# =========================
@dataclass(frozen=True)
class ResolvedIdentity:
    reuse_identity_id: str | None
    existing_roles: tuple[str, ...] = ()


@dataclass(frozen=True)
class UniquenessResult:
    linked_unregistered_patient_id: str | None = None


@dataclass(frozen=True)
class ProvisionedIdentity:
    identity_id: str | None
    email: str
    created: bool
    degraded: bool = False


@dataclass(frozen=True)
class CreatedResources:
    account: Created
    organization: Created | None = None
    patient: Created | None = None


@dataclass
class RegistrationResult:
    intent: RegistrationIntent
    identity: ProvisionedIdentity
    resources: CreatedResources
    linked_unregistered_patient_id: str | None = None
    tasks: dict[str, TaskOutcome] = field(default_factory=dict)
    stage: Stage = Stage.CREATING

    def _task_result(self, name: str, default: Any = None) -> Any:
        outcome = self.tasks.get(name)
        return outcome.result if outcome is not None and outcome.ok else default

    @property
    def subscription_id(self) -> str | None:
        return self._task_result("subscription")

    @property
    def invites(self) -> list[dict[str, Any]]:
        return self._task_result("invitations", []) or []

    @property
    def migration(self) -> MigrationReport | None:
        return self._task_result("history")

    @property
    def has_linked_history(self) -> bool:
        return self.linked_unregistered_patient_id is not None and self.resources.patient is not None

    @property
    def email_verification_required(self) -> bool:
        return self.identity.created

    @property
    def message(self) -> str:
        if self.email_verification_required:
            msg = "Registrazione completata. Controlla la tua email per verificare l'account."
        else:
            msg = "Registrazione completata."
        if self.has_linked_history:
            msg += " Il tuo storico clinico precedente è stato collegato al nuovo profilo."
        return msg

    def to_response(self) -> dict[str, Any]:
        account = self.resources.account.row
        org = self.resources.organization
        patient = self.resources.patient
        data = {
            "user": {
                "id": account["id"],
                "email": account["email"],
                "role": account["role"],
                "authId": account.get("auth_id"),
            },
            "organization": {"id": org.id, "name": org.row.get("name")} if org else None,
            "patient": (
                {"id": patient.id, "firstName": patient.row.get("first_name"), "lastName": patient.row.get("last_name")}
                if patient
                else None
            ),
            "subscriptionId": self.subscription_id,
            "invites": self.invites,
            "supabaseUser": (
                {"id": self.identity.identity_id, "email": self.identity.email, "created": self.identity.created}
                if self.identity.identity_id
                else None
            ),
        }
        return {
            "ok": True,
            "data": data,
            "emailVerificationRequired": self.email_verification_required,
            "hasLinkedHistory": self.has_linked_history,
            "message": self.message,
            "organizationId": account.get("organization_id"),
            "userId": account["id"],
        }


# =========================
# Controlli in sola lettura
# =========================
class IdentityResolver:
    """
    Stessa email ammessa più volte solo se TUTTI i ruoli esistenti sono
    compatibili con quello richiesto. Se compatibile, riusa l'identità già assegnata.
    Check-then-act senza lock: due richieste concorrenti possono passare entrambe.
    """

    def __init__(self, datastore: Datastore) -> None:
        self.datastore = datastore

    def resolve(self, email: str, role: Role) -> ResolvedIdentity:
        rows = self.datastore.query_many("users", {"email": email})
        if not rows:
            return ResolvedIdentity(reuse_identity_id=None)

        existing = sorted({r["role"] for r in rows})
        if incompatible_roles(existing, role):
            logger.info("registration_conflict_email", email=email, existing_roles=existing, role=role.value)
            raise Conflict(
                f"Esiste già un utente registrato con questa email con ruolo/i: {', '.join(existing)}. "
                "La stessa email è ammessa solo per ruoli compatibili (es. MEDICO e PACIENTE).",
                existing_roles=existing,
            )

        reuse = next((r["auth_id"] for r in rows if r.get("auth_id")), None)
        return ResolvedIdentity(reuse_identity_id=reuse, existing_roles=tuple(existing))


class UniquenessGuard:
    def __init__(self, datastore: Datastore) -> None:
        self.datastore = datastore

    def check(self, role: Role, identifier: str | None) -> UniquenessResult:
        if role != Role.PACIENTE or not identifier:
            return UniquenessResult()

        # 1) pazienti registrati attivi con lo stesso identificativo
        for patient in self.datastore.query_many("patients", {"identifier": identifier, "is_active": True}):
            for acc in self.datastore.query_many("users", {"patient_profile_id": patient["id"]}):
                if not are_compatible(acc["role"], role):
                    logger.info("registration_conflict_identifier", identifier=identifier, existing_role=acc["role"])
                    raise Conflict(
                        f"Esiste già un utente registrato con questo documento di identità con ruolo: {acc['role']}. "
                        "Lo stesso identificativo è ammesso solo per ruoli compatibili.",
                        existing_roles=[acc["role"]],
                        identifier=identifier,
                    )
            # paziente senza account: creato dal personale, consentito

        # 2) profilo non registrato: non è un conflitto, va collegato
        shadow = self.datastore.query_one("unregistered_patients", {"identifier": identifier})
        return UniquenessResult(linked_unregistered_patient_id=shadow["id"] if shadow else None)


# =========================
# Provider identità
# =========================
class AuthProvisioner:
    def __init__(self, provider: IdentityProvider, settings: Settings) -> None:
        self.provider = provider
        self.settings = settings

    def _create(self, email: str, password: str, metadata: dict[str, Any]) -> Identity:
        try:
            return self.provider.create_identity(email, password, metadata)
        except IdentityProviderError as e:
            raise ProvisioningDegraded(str(e)) from e

    def provision(
        self,
        email: str,
        password: str,
        metadata: dict[str, Any],
        resolved: ResolvedIdentity,
    ) -> ProvisionedIdentity:
        if resolved.reuse_identity_id:
            logger.info("identity_reused", email=email, identity_id=resolved.reuse_identity_id)
            return ProvisionedIdentity(resolved.reuse_identity_id, email, created=False)

        try:
            identity = self._create(email, password, metadata)
        except ProvisioningDegraded as e:
            logger.warning("identity_provisioning_degraded", email=email, error=str(e))
            if not self.settings.identity_fallback_local:
                raise ProvisioningFailed("Impossibile creare l'identità di autenticazione.") from e
            # si prosegue senza identità: l'account userà la password locale
            return ProvisionedIdentity(None, email, created=False, degraded=True)

        logger.info("identity_created", email=email, identity_id=identity.id)
        return ProvisionedIdentity(identity.id, identity.email, created=True)

    def verification_link(self, email: str, password: str) -> str:
        return self.provider.generate_verification_link(email, password)

    def delete(self, identity_id: str) -> None:
        self.provider.delete_identity(identity_id)


# =========================
# Creazione record
# =========================
class ResourceOrchestrator:
    def __init__(self, datastore: Datastore, settings: Settings) -> None:
        self.datastore = datastore
        self.settings = settings

    def _undo(self, table: str):
        def undo(created: Created) -> None:
            self.datastore.delete(table, created.id)
        return undo

    def create_organization(self, saga: Saga, intent: RegistrationIntent) -> Created | None:
        org = intent.organization
        if org is None:
            return None

        def action() -> Created:
            row = self.datastore.insert(
                "organizations",
                {
                    "name": org.org_name,
                    "org_type": org.org_type.value,
                    "address": org.org_address,
                    "contact_email": intent.account.email,
                    "phone": org.org_phone,
                    "specialist_count": org.specialist_count,
                },
            )
            return Created("organization", row["id"], row)

        return saga.run("organization", action, self._undo("organizations"))

    def create_patient(
        self, saga: Saga, intent: RegistrationIntent, uniqueness: UniquenessResult
    ) -> Created | None:
        p = intent.patient
        if p is None:
            return None

        def action() -> Created:
            row = self.datastore.insert(
                "patients",
                {
                    "first_name": p.first_name,
                    "last_name": p.last_name,
                    "identifier": p.identifier,
                    "dob": p.dob,
                    "gender": p.gender,
                    "phone": p.phone,
                    "address": p.address,
                    "emergency_contact_name": p.emergency_contact_name,
                    "emergency_contact_phone": p.emergency_contact_phone,
                    "allergies": p.allergies,
                    "chronic_conditions": p.chronic_conditions,
                    "current_medications": p.current_medications,
                    "insurance_provider": p.insurance_provider,
                    "insurance_number": p.insurance_number,
                    "organization_id": intent.referral_organization_id,
                    "unregistered_patient_id": uniqueness.linked_unregistered_patient_id,
                },
            )
            return Created("patient", row["id"], row)

        return saga.run("patient", action, self._undo("patients"))

    def _auth_id_for(self, identity: ProvisionedIdentity) -> str | None:
        if not identity.identity_id:
            return None
        if self.settings.identity_link_exclusive:
            holder = self.datastore.query_one("users", {"auth_id": identity.identity_id})
            if holder is not None:
                logger.info(
                    "identity_already_linked",
                    identity_id=identity.identity_id,
                    account_id=holder["id"],
                    role=holder["role"],
                )
                return None
        return identity.identity_id

    def create_account(
        self,
        saga: Saga,
        *,
        email: str,
        name: str,
        role: Role,
        password: str,
        identity: ProvisionedIdentity,
        organization_id: str | None = None,
        patient_profile_id: str | None = None,
    ) -> Created:
        def action() -> Created:
            auth_id = self._auth_id_for(identity)

            # stessa coppia (email, ruolo) già presente: si riusa, niente duplicati
            existing = self.datastore.query_one("users", {"email": email, "role": role.value})
            if existing is not None:
                if not existing.get("auth_id") and auth_id:
                    self.datastore.update("users", {"id": existing["id"]}, {"auth_id": auth_id, "password_hash": None})
                    existing.update(auth_id=auth_id, password_hash=None)
                logger.info("account_reused", account_id=existing["id"], email=email, role=role.value)
                return Created("account", existing["id"], existing, owned=False)

            row = self.datastore.insert(
                "users",
                {
                    "email": email,
                    "name": name,
                    "role": role.value,
                    "organization_id": organization_id,
                    "patient_profile_id": patient_profile_id,
                    "auth_id": auth_id,
                    # senza identità esterna: password locale
                    "password_hash": None if auth_id else hash_password(password),
                },
            )
            return Created("account", row["id"], row)

        return cast(Created, saga.run("account", action, self._undo("users")))

    # ---- passi non critici ----
    def link_sibling_accounts(self, email: str, auth_id: str) -> int:
        """
        Account della stessa email rimasti senza identità (provider giù alla loro
        registrazione) vengono agganciati all'identità appena assegnata.
        La password locale viene azzerata: l'accesso passa dall'identità.
        """
        if self.settings.identity_link_exclusive:
            return 0
        n = self.datastore.update(
            "users",
            {"email": email, "auth_id": None},
            {"auth_id": auth_id, "password_hash": None},
        )
        if n:
            logger.info("sibling_accounts_linked", email=email, identity_id=auth_id, accounts=n)
        return n

    def create_family_group(self, patient: Created) -> str:
        row = self.datastore.insert(
            "family_groups",
            {
                "name": f"{patient.row.get('first_name')} {patient.row.get('last_name')} - Gruppo familiare",
                "owner_id": patient.id,
                "max_members": FAMILY_MAX_MEMBERS,
            },
        )
        return row["id"]

    def create_subscription(self, plan: PlanIn, organization: Created | None, patient: Created | None) -> str:
        now = utcnow()
        row = self.datastore.insert(
            "subscriptions",
            {
                "organization_id": organization.id if organization else None,
                "patient_id": patient.id if patient else None,
                "status": "TRIALING",
                "start_date": now,
                "end_date": add_one_month(now),
                "plan_snapshot": plan.snapshot(),
            },
        )
        return row["id"]

    def create_invitations(self, organization: Created, count: int, invited_by_id: str) -> list[dict[str, Any]]:
        now = utcnow()
        expires_at = now + INVITE_TTL
        rows = [
            {
                "organization_id": organization.id,
                "email": "",
                "token": str(uuid.uuid4()),
                "role": Role.MEDICO.value,
                "invited_by_id": invited_by_id,
                "used": False,
                "expires_at": expires_at,
                "created_at": now,
            }
            for _ in range(count)
        ]
        self.datastore.insert_many("invites", rows)
        base = self.settings.app_url
        return [
            {"token": r["token"], "url": f"{base}/register/accept?token={r['token']}" if base else None}
            for r in rows
        ]


class RegistrationService:
    def __init__(
        self,
        datastore: Datastore,
        identity_provider: IdentityProvider,
        notifier: NotificationDispatcher,
        settings: Settings,
    ) -> None:
        self.datastore = datastore
        self.settings = settings
        self.notifier = notifier
        self.resolver = IdentityResolver(datastore)
        self.guard = UniquenessGuard(datastore)
        self.provisioner = AuthProvisioner(identity_provider, settings)
        self.orchestrator = ResourceOrchestrator(datastore, settings)
        self.migrator = HistoryMigrator(datastore)

    @staticmethod
    def _enter(stage: Stage, **kw: Any) -> Stage:
        logger.debug("registration_stage", stage=stage.value, **kw)
        return stage

    def register_body(self, body: Any) -> RegistrationResult:
        """Payload JSON grezzo -> registrazione (ValidationError senza side effect)."""
        self._enter(Stage.VALIDATING)
        return self.register(parse_registration(body))

    def register(self, intent: RegistrationIntent) -> RegistrationResult:
        account = intent.account
        role = account.role
        bind_contextvars(email=account.email, role=role.value)

        self._enter(Stage.RESOLVING_IDENTITY)
        resolved = self.resolver.resolve(account.email, role)
        uniqueness = self.guard.check(role, intent.patient_identifier)

        self._enter(Stage.PROVISIONING)
        identity = self.provisioner.provision(
            account.email,
            account.password,
            {"fullName": account.full_name, "role": role.value},
            resolved,
        )

        saga = Saga("registration")
        if identity.created and identity.identity_id:
            # registrata per prima: in compensazione viene cancellata per ultima
            identity_id = identity.identity_id
            saga.record("identity", identity_id, lambda: self.provisioner.delete(identity_id))

        try:
            self._enter(Stage.CREATING, step="organization")
            org = self.orchestrator.create_organization(saga, intent)
            self._enter(Stage.CREATING, step="patient")
            patient = self.orchestrator.create_patient(saga, intent, uniqueness)
            self._enter(Stage.CREATING, step="account")
            acc = self.orchestrator.create_account(
                saga,
                email=account.email,
                name=account.full_name,
                role=role,
                password=account.password,
                identity=identity,
                organization_id=intent.referral_organization_id or (org.id if org else None),
                patient_profile_id=patient.id if patient else None,
            )
        except StepFailure as e:
            e.stage = self._enter(Stage.COMPENSATING_AND_FAILED, step=e.step)
            logger.error(
                "registration_failed",
                email=account.email,
                step=e.step,
                compensation_complete=e.compensation.complete if e.compensation else None,
            )
            raise

        resources = CreatedResources(account=acc, organization=org, patient=patient)
        result = RegistrationResult(
            intent=intent,
            identity=identity,
            resources=resources,
            linked_unregistered_patient_id=uniqueness.linked_unregistered_patient_id,
        )
        result.tasks = run_non_critical(self._follow_up_tasks(result))
        result.stage = self._enter(Stage.DONE)

        logger.info(
            "registration_completed",
            email=account.email,
            role=role.value,
            user_id=acc.id,
            identity_created=identity.created,
            linked_history=result.has_linked_history,
            failed_tasks=sorted(n for n, o in result.tasks.items() if not o.ok),
        )
        return result

    def _follow_up_tasks(self, result: RegistrationResult) -> list[tuple[str, Any]]:
        intent = result.intent
        res = result.resources
        tasks: list[tuple[str, Any]] = []

        auth_id = res.account.row.get("auth_id")
        if auth_id:
            tasks.append(
                ("link_accounts", lambda: self.orchestrator.link_sibling_accounts(intent.account.email, auth_id))
            )

        if intent.plan and intent.plan.selected_plan == FAMILY_PLAN and res.patient:
            tasks.append(("family_group", lambda: self.orchestrator.create_family_group(res.patient)))

        if intent.plan:
            tasks.append(
                ("subscription", lambda: self.orchestrator.create_subscription(intent.plan, res.organization, res.patient))
            )

        if res.organization and intent.organization and intent.organization.specialist_count > 0:
            count = intent.organization.specialist_count
            tasks.append(
                ("invitations", lambda: self.orchestrator.create_invitations(res.organization, count, res.account.id))
            )

        if intent.account.role == Role.PACIENTE and result.has_linked_history:
            def migrate() -> MigrationReport:
                result.stage = self._enter(Stage.MIGRATING)
                return self.migrator.migrate(result.linked_unregistered_patient_id, res.patient.id)

            tasks.append(("history", migrate))

        tasks.append(("notification", lambda: self._notify(result)))
        return tasks

    def _notify(self, result: RegistrationResult) -> str:
        result.stage = self._enter(Stage.NOTIFYING)
        account = result.intent.account
        payload: dict[str, Any] = {"name": account.full_name, "role": account.role.value}

        if result.identity.created:
            payload["verification_url"] = self.provisioner.verification_link(account.email, account.password)
            kind = NotificationKind.VERIFICATION_PENDING
        else:
            kind = NotificationKind.WELCOME

        self.notifier.send(account.email, kind, payload)
        return kind.value
