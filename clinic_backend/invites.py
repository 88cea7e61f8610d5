from __future__ import annotations

from typing import Any

import structlog

from .errors import InviteRejected, NotFound, StepFailure
from .models import NotificationKind, utcnow
from .registration import RegistrationService
from .roles import Role, parse_role
from .saga import Saga, run_non_critical
from .schemas import InviteAcceptIn

logger = structlog.get_logger(__name__)


class InviteAcceptanceService:
    """
    Registrazione da invito (specialista che entra in un'organizzazione).
    Riusa gli stessi componenti della registrazione: controllo ruoli,
    provider identità, saga sull'account.
    """

    def __init__(self, registration: RegistrationService) -> None:
        self.registration = registration
        self.datastore = registration.datastore

    def _load_invite(self, payload: InviteAcceptIn) -> dict[str, Any]:
        invite = self.datastore.query_one("invites", {"token": payload.token})
        if invite is None:
            raise NotFound("Invito non valido.")
        if invite["used"]:
            raise InviteRejected("Invito già utilizzato.")
        if invite["expires_at"] is not None and invite["expires_at"] < utcnow():
            raise InviteRejected("Invito scaduto.")
        # inviti creati in blocco hanno email vuota: qualunque email è accettata
        if invite["email"] and invite["email"].strip().lower() != payload.email:
            raise InviteRejected("L'email non corrisponde all'invito.")
        return invite

    def accept(self, payload: InviteAcceptIn) -> dict[str, Any]:
        invite = self._load_invite(payload)
        role = parse_role(invite["role"]) or Role.MEDICO
        reg = self.registration

        resolved = reg.resolver.resolve(payload.email, role)
        identity = reg.provisioner.provision(
            payload.email,
            payload.password,
            {
                "fullName": payload.full_name,
                "role": role.value,
                "phone": payload.phone,
                "organizationId": invite["organization_id"],
            },
            resolved,
        )

        saga = Saga("invite_acceptance")
        if identity.created and identity.identity_id:
            identity_id = identity.identity_id
            saga.record("identity", identity_id, lambda: reg.provisioner.delete(identity_id))

        try:
            account = reg.orchestrator.create_account(
                saga,
                email=payload.email,
                name=payload.full_name,
                role=role,
                password=payload.password,
                identity=identity,
                organization_id=invite["organization_id"],
            )
        except StepFailure as e:
            logger.error("invite_acceptance_failed", token=payload.token, step=e.step)
            raise

        def notify() -> str:
            data: dict[str, Any] = {"name": payload.full_name, "role": role.value}
            if identity.created:
                data["verification_url"] = reg.provisioner.verification_link(payload.email, payload.password)
                kind = NotificationKind.VERIFICATION_PENDING
            else:
                kind = NotificationKind.WELCOME
            reg.notifier.send(payload.email, kind, data)
            return kind.value

        def mark_used() -> int:
            # solo se ancora libero: una redenzione concorrente lo ha già consumato
            n = self.datastore.update("invites", {"id": invite["id"], "used": False}, {"used": True})
            if n == 0:
                logger.warning("invite_already_used", invite_id=invite["id"], user_id=account.id)
            return n

        follow_up: list[tuple[str, Any]] = [("mark_invite_used", mark_used)]
        auth_id = account.row.get("auth_id")
        if auth_id:
            follow_up.append(("link_accounts", lambda: reg.orchestrator.link_sibling_accounts(payload.email, auth_id)))
        follow_up.append(("notification", notify))
        tasks = run_non_critical(follow_up)

        logger.info(
            "invite_accepted",
            invite_id=invite["id"],
            organization_id=invite["organization_id"],
            user_id=account.id,
            failed_tasks=sorted(n for n, o in tasks.items() if not o.ok),
        )
        return {
            "ok": True,
            "data": {
                "user": {
                    "id": account.id,
                    "email": account.row["email"],
                    "role": account.row["role"],
                    "authId": account.row.get("auth_id"),
                },
                "organizationId": invite["organization_id"],
            },
            "emailVerificationRequired": identity.created,
        }
