from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# DB SQLite su file nella root del progetto (default per sviluppo locale)
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "clinic.sqlite"
# stesso host/porta di `api_main.main()`
DEFAULT_PUBLIC_URL = "http://127.0.0.1:8000"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """
    Configurazione applicativa.
    Costruita esplicitamente (Settings.from_env() o a mano nei test):
    nessun client o engine globale a livello di modulo.
    """
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    app_env: str = "development"
    app_url: str = ""
    log_level: str = "INFO"

    # In produzione: mettila in variabile d'ambiente
    jwt_secret: str = "CHANGE_ME_DEV_SECRET"
    jwt_alg: str = "HS256"
    verify_token_expire_minutes: int = 60 * 24

    # Provider identità ospitato (se assente si usa quello locale)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    identity_http_timeout: float = 10.0

    # Se il provider identità fallisce: True = si prosegue con hash locale
    identity_fallback_local: bool = True
    # True = un'identità può essere collegata a un solo account (one-to-one)
    identity_link_exclusive: bool = False

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def public_url(self) -> str:
        """URL base per i link nelle email (APP_URL, altrimenti l'indirizzo di default dell'API)."""
        return self.app_url or DEFAULT_PUBLIC_URL

    @property
    def uses_hosted_identity(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            app_env=os.getenv("APP_ENV", cls.app_env),
            app_url=os.getenv("APP_URL", "").rstrip("/"),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            jwt_alg=os.getenv("JWT_ALG", cls.jwt_alg),
            verify_token_expire_minutes=int(
                os.getenv("VERIFY_TOKEN_EXPIRE_MINUTES", str(cls.verify_token_expire_minutes))
            ),
            supabase_url=(os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or "").rstrip("/"),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            identity_http_timeout=float(os.getenv("IDENTITY_HTTP_TIMEOUT", str(cls.identity_http_timeout))),
            identity_fallback_local=_env_bool("IDENTITY_FALLBACK_LOCAL", True),
            identity_link_exclusive=_env_bool("IDENTITY_LINK_EXCLUSIVE", False),
        )
