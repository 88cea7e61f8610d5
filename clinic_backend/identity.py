"""
Provider di identità (autenticazione esterna).

Interfaccia minima usata dalla registrazione:
- create_identity(email, password, metadata) -> Identity
- generate_verification_link(email, password) -> url
- delete_identity(id)

Implementazioni:
- LocalIdentityProvider : tabella `identities` + link firmati JWT (sviluppo, test, on-premise)
- GoTrueIdentityProvider: API admin del servizio auth ospitato (Supabase/GoTrue) via HTTP
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .auth_security import create_verification_token, decode_verification_token, hash_password
from .config import Settings
from .db import Database
from .errors import IdentityProviderError
from .models import Identity as IdentityRow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    verified: bool = False


class IdentityProvider:
    def create_identity(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity:
        raise NotImplementedError

    def generate_verification_link(self, email: str, password: str) -> str:
        raise NotImplementedError

    def delete_identity(self, identity_id: str) -> None:
        raise NotImplementedError


class LocalIdentityProvider(IdentityProvider):
    def __init__(self, database: Database, settings: Settings) -> None:
        self.database = database
        self.settings = settings

    def create_identity(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity:
        email = email.strip().lower()
        try:
            with self.database.session() as s:
                exists = s.execute(select(IdentityRow).where(IdentityRow.email == email)).scalar_one_or_none()
                if exists:
                    raise IdentityProviderError("Email già registrata presso il provider identità.")

                row = IdentityRow(
                    email=email,
                    password_hash=hash_password(password),
                    verified=False,
                    user_metadata=metadata or {},
                )
                s.add(row)
                s.flush()
                return Identity(id=row.id, email=row.email, verified=row.verified)
        except SQLAlchemyError as e:
            raise IdentityProviderError(str(e)) from e

    def generate_verification_link(self, email: str, password: str) -> str:
        email = email.strip().lower()
        with self.database.session() as s:
            row = s.execute(select(IdentityRow).where(IdentityRow.email == email)).scalar_one_or_none()
            if row is None:
                raise IdentityProviderError(f"Identità non trovata per {email}.")
            identity_id = row.id

        token = create_verification_token(self.settings, subject=identity_id, email=email)
        return f"{self.settings.public_url}/auth/verify?token={token}"

    def delete_identity(self, identity_id: str) -> None:
        try:
            with self.database.session() as s:
                row = s.get(IdentityRow, identity_id)
                if row is not None:
                    s.delete(row)
        except SQLAlchemyError as e:
            raise IdentityProviderError(str(e)) from e

    def verify_email(self, token: str) -> Identity | None:
        """Completa il link di verifica: None se token non valido/scaduto o identità assente."""
        payload = decode_verification_token(self.settings, token)
        if payload is None:
            return None

        with self.database.session() as s:
            row = s.get(IdentityRow, payload["sub"])
            if row is None:
                return None
            row.verified = True
            return Identity(id=row.id, email=row.email, verified=True)

    def get(self, identity_id: str) -> Identity | None:
        with self.database.session() as s:
            row = s.get(IdentityRow, identity_id)
            if row is None:
                return None
            return Identity(id=row.id, email=row.email, verified=row.verified)


def _parse_user(body: Any) -> dict[str, Any] | None:
    # la risposta può essere l'utente stesso oppure {"user": {...}}
    if not isinstance(body, dict):
        return None
    user = body.get("user") if isinstance(body.get("user"), dict) else body
    if isinstance(user.get("id"), str):
        return user
    return None


class GoTrueIdentityProvider(IdentityProvider):
    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        timeout: float = 10.0,
        redirect_url: str = "",
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.redirect_url = redirect_url
        self.http = session or requests.Session()
        self.http.headers.update(
            {
                "apikey": service_role_key,
                "Authorization": f"Bearer {service_role_key}",
                "Content-Type": "application/json",
            }
        )

    def _request(self, method: str, path: str, payload: dict | None = None) -> Any:
        url = f"{self.base_url}/auth/v1{path}"
        try:
            r = self.http.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise IdentityProviderError(f"{method} {path}: {e}") from e

        if r.status_code >= 400:
            raise IdentityProviderError(f"{method} {path}: HTTP {r.status_code} {r.text[:200]}")
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise IdentityProviderError(f"{method} {path}: risposta non JSON") from e

    def create_identity(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity:
        body = self._request(
            "POST",
            "/admin/users",
            {
                "email": email,
                "password": password,
                "email_confirm": False,
                "user_metadata": metadata or {},
            },
        )
        user = _parse_user(body)
        if user is None:
            logger.warning("identity_create_unparsable_response", email=email)
            raise IdentityProviderError("Impossibile ricavare l'id dell'identità creata.")
        return Identity(
            id=user["id"],
            email=user.get("email") or email,
            verified=bool(user.get("email_confirmed_at")),
        )

    def generate_verification_link(self, email: str, password: str) -> str:
        payload: dict[str, Any] = {"type": "signup", "email": email, "password": password}
        if self.redirect_url:
            payload["redirect_to"] = self.redirect_url
        body = self._request("POST", "/admin/generate_link", payload) or {}
        link = body.get("action_link") or (body.get("properties") or {}).get("action_link")
        if not link:
            raise IdentityProviderError("Link di verifica assente nella risposta.")
        return link

    def delete_identity(self, identity_id: str) -> None:
        self._request("DELETE", f"/admin/users/{identity_id}")


def build_identity_provider(settings: Settings, database: Database) -> IdentityProvider:
    if settings.uses_hosted_identity:
        return GoTrueIdentityProvider(
            settings.supabase_url,
            settings.supabase_service_role_key,
            timeout=settings.identity_http_timeout,
            redirect_url=f"{settings.app_url}/login" if settings.app_url else "",
        )
    logger.info("identity_provider_local", reason="SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY non impostate")
    return LocalIdentityProvider(database, settings)
