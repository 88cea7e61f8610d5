from datetime import date

import pytest

from clinic_backend.errors import ValidationError
from clinic_backend.roles import Role
from clinic_backend.schemas import MAX_SPECIALISTS, OrgType, parse_invite_acceptance, parse_registration
from conftest import registration_body


def _fields(exc: ValidationError) -> set[str]:
    return {e["field"] for e in exc.errors}


def test_email_is_trimmed_and_lowercased():
    intent = parse_registration(registration_body(email="  Ana.Perez@Example.COM "))
    assert intent.account.email == "ana.perez@example.com"


def test_role_defaults_to_admin_and_is_case_insensitive():
    body = registration_body()
    del body["account"]["role"]
    assert parse_registration(body).account.role is Role.ADMIN
    assert parse_registration(registration_body(role="paciente")).account.role is Role.PACIENTE


def test_missing_account_is_reported():
    with pytest.raises(ValidationError) as exc:
        parse_registration({"organization": {"orgName": "Clinica Sol"}})
    assert "account" in _fields(exc.value)
    assert exc.value.status_code == 400


@pytest.mark.parametrize(
    "account_patch, field",
    [
        ({"email": "not-an-email"}, "account.email"),
        ({"password": "short"}, "account.password"),
        ({"fullName": ""}, "account.fullName"),
        ({"role": "DENTISTA"}, "account.role"),
    ],
)
def test_invalid_account_fields(account_patch, field):
    body = registration_body()
    body["account"].update(account_patch)
    with pytest.raises(ValidationError) as exc:
        parse_registration(body)
    assert field in _fields(exc.value)


@pytest.mark.parametrize("raw, expected", [(3, 3), ("7", 7), (120, MAX_SPECIALISTS), (-4, 0), (None, 0), ("", 0)])
def test_specialist_count_is_clamped(raw, expected):
    body = registration_body(organization={"orgName": "Clinica Sol", "specialistCount": raw})
    assert parse_registration(body).organization.specialist_count == expected


@pytest.mark.parametrize("raw", ["tre", True, "inf"])
def test_specialist_count_rejects_non_numbers(raw):
    body = registration_body(organization={"orgName": "Clinica Sol", "specialistCount": raw})
    with pytest.raises(ValidationError) as exc:
        parse_registration(body)
    assert "organization.specialistCount" in _fields(exc.value)


def test_org_type_defaults_and_normalizes():
    intent = parse_registration(registration_body(organization={"orgName": "Sol", "orgType": "hospital"}))
    assert intent.organization.org_type is OrgType.HOSPITAL
    intent = parse_registration(registration_body(organization={"orgName": "Sol"}))
    assert intent.organization.org_type is OrgType.CLINICA


def test_patient_blank_fields_become_none():
    body = registration_body(
        role="PACIENTE",
        patient={"firstName": "Ana", "lastName": "Pérez", "identifier": "  ", "dob": "", "organizationId": ""},
        selectedOrganizationId="",
    )
    intent = parse_registration(body)
    assert intent.patient.identifier is None
    assert intent.patient.dob is None
    assert intent.referral_organization_id is None
    assert intent.patient_identifier is None


def test_patient_dob_parsed_and_referral_precedence():
    body = registration_body(
        role="PACIENTE",
        patient={"firstName": "Ana", "lastName": "Pérez", "dob": "1990-04-12", "organizationId": "org-patient"},
        selectedOrganizationId="org-top",
    )
    intent = parse_registration(body)
    assert intent.patient.dob == date(1990, 4, 12)
    assert intent.referral_organization_id == "org-patient"


def test_top_level_referral_used_when_patient_has_none():
    body = registration_body(
        role="PACIENTE",
        patient={"firstName": "Ana", "lastName": "Pérez"},
        selectedOrganizationId="org-top",
    )
    assert parse_registration(body).referral_organization_id == "org-top"


def test_plan_snapshot():
    body = registration_body(
        plan={"selectedPlan": "clinica-pro", "billingPeriod": "annual", "billingMonths": 12, "billingTotal": 990}
    )
    snap = parse_registration(body).plan.snapshot()
    assert snap == {
        "selectedPlan": "clinica-pro",
        "billingPeriod": "annual",
        "months": 12,
        "discount": None,
        "total": 990.0,
    }


def test_plan_rejects_unknown_billing_period():
    with pytest.raises(ValidationError) as exc:
        parse_registration(registration_body(plan={"selectedPlan": "x", "billingPeriod": "weekly"}))
    assert "plan.billingPeriod" in _fields(exc.value)


@pytest.mark.parametrize("body", [None, [], "registrazione"])
def test_non_object_body_rejected(body):
    with pytest.raises(ValidationError) as exc:
        parse_registration(body)
    assert _fields(exc.value) == {"body"}


def test_invite_acceptance_payload():
    payload = parse_invite_acceptance(
        {"token": "abc", "email": "Doc@Example.com", "firstName": "Luis", "lastName": "Gómez", "password": "s3cret-pass"}
    )
    assert payload.email == "doc@example.com"
    assert payload.full_name == "Luis Gómez"
    assert payload.phone is None
