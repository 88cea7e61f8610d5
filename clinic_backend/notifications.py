from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select

from .datastore import Datastore
from .models import Notification, NotificationKind, utcnow

logger = structlog.get_logger(__name__)

TEMPLATES: dict[NotificationKind, str] = {
    NotificationKind.VERIFICATION_PENDING: (
        "Ciao {name}, conferma il tuo indirizzo email per attivare l'account: {verification_url}"
    ),
    NotificationKind.WELCOME: "Benvenuto {name}! Il tuo account {role} è attivo.",
}


def render(kind: NotificationKind, payload: dict[str, Any]) -> str:
    values = {"name": "", "role": "", "verification_url": ""}
    values.update({k: v for k, v in payload.items() if v is not None})
    return TEMPLATES[kind].format(**values)


class NotificationDispatcher:
    """
    Invio "fire-and-forget": la notifica viene scritta nell'outbox,
    il sistema esterno la legge e la marca come inviata.
    """

    def __init__(self, datastore: Datastore) -> None:
        self.datastore = datastore

    def send(self, recipient: str, template_kind: NotificationKind, payload: dict[str, Any]) -> int:
        row = self.datastore.insert(
            Notification.__tablename__,
            {
                "recipient": recipient,
                "template_kind": template_kind,
                "payload": payload,
                "message": render(template_kind, payload),
            },
        )
        logger.info("notification_queued", recipient=recipient, template_kind=template_kind.value, id=row["id"])
        return row["id"]

    # =========================
    # Outbox (simulazione sistema esterno)
    # =========================
    def pending(self, limit: int = 50) -> list[Notification]:
        """Ritorna notifiche non ancora 'inviate' (sent_at è NULL)."""
        with self.datastore.database.session() as s:
            q = (
                select(Notification)
                .where(Notification.sent_at.is_(None))
                .order_by(Notification.created_at.asc(), Notification.id.asc())
                .limit(limit)
            )
            return list(s.scalars(q))

    def mark_sent(self, notification_id: int) -> bool:
        with self.datastore.database.session() as s:
            n = s.get(Notification, notification_id)
            if not n or n.sent_at is not None:
                return False
            n.sent_at = utcnow()
            return True
