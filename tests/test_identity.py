from unittest.mock import MagicMock

import pytest
import requests

from clinic_backend.auth_security import create_verification_token, decode_verification_token, verify_password
from clinic_backend.config import Settings
from clinic_backend.errors import IdentityProviderError
from clinic_backend.identity import GoTrueIdentityProvider, LocalIdentityProvider, build_identity_provider


# =========================
# Provider locale
# =========================
@pytest.fixture()
def local(database, settings):
    return LocalIdentityProvider(database, settings)


def test_local_create_and_delete(local, datastore):
    identity = local.create_identity(" Doc@Example.com ", "s3cret-pass", {"role": "MEDICO"})

    row = datastore.query_one("identities", {"id": identity.id})
    assert identity.email == "doc@example.com"
    assert identity.verified is False
    assert row["user_metadata"] == {"role": "MEDICO"}
    assert verify_password("s3cret-pass", row["password_hash"])

    local.delete_identity(identity.id)
    assert datastore.query_one("identities", {"id": identity.id}) is None
    # cancellare due volte non è un errore
    local.delete_identity(identity.id)


def test_local_duplicate_email_is_provider_error(local):
    local.create_identity("doc@example.com", "s3cret-pass")
    with pytest.raises(IdentityProviderError):
        local.create_identity("DOC@example.com", "altra-pass")


def test_local_verification_link_round_trip(local):
    identity = local.create_identity("doc@example.com", "s3cret-pass")
    link = local.generate_verification_link("doc@example.com", "s3cret-pass")

    assert link.startswith("http://clinic.test/auth/verify?token=")
    token = link.split("token=", 1)[1]
    verified = local.verify_email(token)
    assert verified.id == identity.id
    assert local.get(identity.id).verified is True


def test_local_verification_link_without_app_url(database):
    local = LocalIdentityProvider(database, Settings(database_url="sqlite://", jwt_secret="test-secret"))
    local.create_identity("doc@example.com", "s3cret-pass")

    link = local.generate_verification_link("doc@example.com", "s3cret-pass")
    assert link.startswith("http://127.0.0.1:8000/auth/verify?token=")


def test_local_verification_link_unknown_email(local):
    with pytest.raises(IdentityProviderError):
        local.generate_verification_link("ghost@example.com", "s3cret-pass")


def test_verification_token_rejects_tampering(settings):
    token = create_verification_token(settings, subject="id-1", email="a@b.com")
    assert decode_verification_token(settings, token)["sub"] == "id-1"
    assert decode_verification_token(settings, token + "x") is None

    other = Settings(jwt_secret="altro-segreto")
    assert decode_verification_token(other, token) is None


def test_expired_verification_token(settings):
    expired = Settings(jwt_secret=settings.jwt_secret, verify_token_expire_minutes=-1)
    token = create_verification_token(expired, subject="id-1", email="a@b.com")
    assert decode_verification_token(settings, token) is None


# =========================
# Provider ospitato (HTTP)
# =========================
def _response(status_code=200, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = b"{}" if body is not None else b""
    resp.json.return_value = body
    resp.text = text
    return resp


@pytest.fixture()
def http():
    session = MagicMock()
    session.headers = {}
    return session


@pytest.fixture()
def gotrue(http):
    return GoTrueIdentityProvider(
        "https://auth.example.com/",
        "service-key",
        timeout=5,
        redirect_url="http://clinic.test/login",
        session=http,
    )


def test_gotrue_sets_service_headers(gotrue, http):
    assert http.headers["apikey"] == "service-key"
    assert http.headers["Authorization"] == "Bearer service-key"


def test_gotrue_create_identity(gotrue, http):
    http.request.return_value = _response(200, {"id": "u-1", "email": "doc@example.com"})

    identity = gotrue.create_identity("doc@example.com", "s3cret-pass", {"role": "MEDICO"})

    assert identity.id == "u-1"
    method, url = http.request.call_args.args
    payload = http.request.call_args.kwargs["json"]
    assert (method, url) == ("POST", "https://auth.example.com/auth/v1/admin/users")
    assert payload["email_confirm"] is False
    assert payload["user_metadata"] == {"role": "MEDICO"}
    assert http.request.call_args.kwargs["timeout"] == 5


def test_gotrue_create_identity_wrapped_user(gotrue, http):
    http.request.return_value = _response(200, {"user": {"id": "u-2", "email": "doc@example.com"}})
    assert gotrue.create_identity("doc@example.com", "s3cret-pass").id == "u-2"


@pytest.mark.parametrize(
    "response",
    [
        _response(422, {"msg": "email exists"}, text="email exists"),
        _response(200, {"unexpected": True}),
        _response(200, None),
    ],
)
def test_gotrue_create_identity_errors(gotrue, http, response):
    http.request.return_value = response
    with pytest.raises(IdentityProviderError):
        gotrue.create_identity("doc@example.com", "s3cret-pass")


def test_gotrue_network_error(gotrue, http):
    http.request.side_effect = requests.ConnectionError("down")
    with pytest.raises(IdentityProviderError):
        gotrue.delete_identity("u-1")


def test_gotrue_generate_link(gotrue, http):
    http.request.return_value = _response(200, {"action_link": "https://auth.example.com/verify?t=1"})

    assert gotrue.generate_verification_link("doc@example.com", "s3cret-pass") == "https://auth.example.com/verify?t=1"
    payload = http.request.call_args.kwargs["json"]
    assert payload["type"] == "signup"
    assert payload["redirect_to"] == "http://clinic.test/login"


def test_gotrue_generate_link_nested_properties(gotrue, http):
    http.request.return_value = _response(200, {"properties": {"action_link": "https://x/verify"}})
    assert gotrue.generate_verification_link("doc@example.com", "s3cret-pass") == "https://x/verify"


def test_gotrue_delete_identity(gotrue, http):
    http.request.return_value = _response(204)
    gotrue.delete_identity("u-1")
    assert http.request.call_args.args == ("DELETE", "https://auth.example.com/auth/v1/admin/users/u-1")


def test_build_identity_provider_selects_implementation(database, settings):
    assert isinstance(build_identity_provider(settings, database), LocalIdentityProvider)

    hosted = Settings(supabase_url="https://auth.example.com", supabase_service_role_key="k")
    assert isinstance(build_identity_provider(hosted, database), GoTrueIdentityProvider)
