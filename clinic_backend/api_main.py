from __future__ import annotations

import traceback
import uuid
from typing import Any

import structlog
from fastapi import Body, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, clear_contextvars

from .config import Settings
from .container import Container
from .errors import RegistrationError, StepFailure
from .identity import LocalIdentityProvider
from .logging_setup import configure_logging
from .schemas import parse_invite_acceptance

logger = structlog.get_logger(__name__)


def create_app(container: Container | None = None) -> FastAPI:
    """
    Factory dell'applicazione.
    Avvio: uvicorn clinic_backend.api_main:create_app --factory
    """
    if container is None:
        settings = Settings.from_env()
        configure_logging(settings)
        container = Container.build(settings)

    settings = container.settings
    app = FastAPI(title="Clinic Registration API", version="1.0.0")
    app.state.container = container

    # Startup

    @app.on_event("startup")
    def startup() -> None:
        # Crea tabelle (idempotente)
        container.database.create_all()

    # Middleware / handler errori

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        clear_contextvars()
        bind_contextvars(request_id=request_id, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # es. JSON malformato: stessa forma degli errori di validazione applicativi
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())) or "body", "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "message": "Payload non valido.", "errors": errors},
        )

    def error_response(exc: RegistrationError) -> JSONResponse:
        body = exc.to_body()
        if isinstance(exc, StepFailure) and not settings.is_production and exc.cause is not None:
            body["stack"] = "".join(traceback.format_exception(exc.cause))
        return JSONResponse(status_code=exc.status_code, content=body)

    def internal_error(exc: Exception) -> JSONResponse:
        body: dict[str, Any] = {"ok": False, "message": "Errore interno."}
        if not settings.is_production:
            body["message"] = str(exc) or body["message"]
            body["stack"] = "".join(traceback.format_exception(exc))
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)

    # Endpoints

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    @app.post("/register")
    def register(body: Any = Body(None)) -> JSONResponse:
        try:
            result = container.registration.register_body(body)
        except RegistrationError as e:
            return error_response(e)
        except Exception as e:
            logger.exception("registration_unexpected_error")
            return internal_error(e)
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.to_response())

    @app.post("/register-from-invite")
    def register_from_invite(body: Any = Body(None)) -> JSONResponse:
        try:
            payload = parse_invite_acceptance(body)
            bind_contextvars(email=payload.email)
            result = container.invites.accept(payload)
        except RegistrationError as e:
            return error_response(e)
        except Exception as e:
            logger.exception("invite_acceptance_unexpected_error")
            return internal_error(e)
        return JSONResponse(status_code=status.HTTP_201_CREATED, content=result)

    @app.get("/auth/verify")
    def verify_email(token: str = Query(...)) -> JSONResponse:
        provider = container.identity_provider
        if not isinstance(provider, LocalIdentityProvider):
            # con il provider ospitato la verifica avviene sul suo dominio
            return JSONResponse(status_code=404, content={"ok": False, "message": "Verifica non gestita qui."})

        identity = provider.verify_email(token)
        if identity is None:
            return JSONResponse(status_code=400, content={"ok": False, "message": "Link di verifica non valido o scaduto."})
        logger.info("identity_verified", identity_id=identity.id)
        return JSONResponse(content={"ok": True, "message": "Email verificata.", "email": identity.email})

    return app


def main() -> None:
    import uvicorn

    uvicorn.run("clinic_backend.api_main:create_app", factory=True, host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()
