from __future__ import annotations

import enum
import re
from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .roles import Role

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_SPECIALISTS = 50


class OrgType(str, enum.Enum):
    CLINICA = "CLINICA"
    HOSPITAL = "HOSPITAL"
    CONSULTORIO = "CONSULTORIO"
    FARMACIA = "FARMACIA"
    LABORATORIO = "LABORATORIO"


class _In(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


def _normalize_email(v: Any) -> Any:
    if isinstance(v, str):
        v = v.strip().lower()
        if not EMAIL_RE.match(v):
            raise ValueError("Formato email non valido")
    return v


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


# =========================
# Registrazione
# =========================
class AccountIn(_In):
    email: str = Field(..., max_length=254)
    full_name: str = Field(..., alias="fullName", min_length=1, max_length=120)
    password: str = Field(..., min_length=8, max_length=72)
    role: Role = Role.ADMIN

    normalize_email = field_validator("email")(_normalize_email)

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return Role.ADMIN
        if isinstance(v, str):
            return v.strip().upper()
        return v


class OrganizationIn(_In):
    org_name: str = Field(..., alias="orgName", min_length=1, max_length=160)
    org_type: OrgType = Field(OrgType.CLINICA, alias="orgType")
    org_address: str | None = Field(None, alias="orgAddress", max_length=255)
    org_phone: str | None = Field(None, alias="orgPhone", max_length=30)
    specialist_count: int = Field(0, alias="specialistCount")

    @field_validator("org_type", mode="before")
    @classmethod
    def normalize_org_type(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return OrgType.CLINICA
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("specialist_count", mode="before")
    @classmethod
    def clamp_specialists(cls, v: Any) -> int:
        # valori fuori range vengono riportati in [0, MAX_SPECIALISTS], non rifiutati
        if v is None or v == "":
            return 0
        if isinstance(v, bool):
            raise ValueError("Numero di specialisti non valido")
        try:
            n = int(float(v))
        except (TypeError, ValueError, OverflowError):
            raise ValueError("Numero di specialisti non valido") from None
        return max(0, min(MAX_SPECIALISTS, n))


class PatientIn(_In):
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=80)
    last_name: str = Field(..., alias="lastName", min_length=1, max_length=80)
    identifier: str | None = Field(None, max_length=40)
    dob: date | None = None
    gender: str | None = Field(None, max_length=20)
    phone: str | None = Field(None, max_length=30)
    address: str | None = Field(None, max_length=255)
    emergency_contact_name: str | None = Field(None, alias="emergencyContactName", max_length=120)
    emergency_contact_phone: str | None = Field(None, alias="emergencyContactPhone", max_length=30)
    allergies: str | None = None
    chronic_conditions: str | None = Field(None, alias="chronicConditions")
    current_medications: str | None = Field(None, alias="currentMedications")
    insurance_provider: str | None = Field(None, alias="insuranceProvider", max_length=120)
    insurance_number: str | None = Field(None, alias="insuranceNumber", max_length=60)
    organization_id: str | None = Field(None, alias="organizationId", max_length=36)

    blank_to_none = field_validator("identifier", "dob", "organization_id", mode="before")(_blank_to_none)


class PlanIn(_In):
    selected_plan: str = Field(..., alias="selectedPlan", min_length=1, max_length=60)
    billing_period: Literal["monthly", "quarterly", "annual"] = Field("monthly", alias="billingPeriod")
    billing_months: int | None = Field(None, alias="billingMonths", ge=1, le=36)
    billing_discount: float | None = Field(None, alias="billingDiscount", ge=0)
    billing_total: float | None = Field(None, alias="billingTotal", ge=0)

    def snapshot(self) -> dict[str, Any]:
        return {
            "selectedPlan": self.selected_plan,
            "billingPeriod": self.billing_period,
            "months": self.billing_months,
            "discount": self.billing_discount,
            "total": self.billing_total,
        }


class RegistrationIntent(_In):
    account: AccountIn
    organization: OrganizationIn | None = None
    patient: PatientIn | None = None
    plan: PlanIn | None = None
    selected_organization_id: str | None = Field(None, alias="selectedOrganizationId", max_length=36)

    blank_to_none = field_validator("selected_organization_id", mode="before")(_blank_to_none)

    @property
    def referral_organization_id(self) -> str | None:
        """Clinica scelta dal paziente (ha precedenza su quella appena creata)."""
        if self.patient and self.patient.organization_id:
            return self.patient.organization_id
        return self.selected_organization_id

    @property
    def patient_identifier(self) -> str | None:
        return self.patient.identifier if self.patient else None


# =========================
# Registrazione da invito
# =========================
class InviteAcceptIn(_In):
    token: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., max_length=254)
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=80)
    last_name: str = Field(..., alias="lastName", min_length=1, max_length=80)
    password: str = Field(..., min_length=8, max_length=72)
    phone: str | None = Field(None, max_length=30)

    normalize_email = field_validator("email")(_normalize_email)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


def _validate(model: type[_In], body: Any) -> Any:
    if not isinstance(body, dict):
        raise ValidationError(
            "Payload non valido: atteso un oggetto JSON.",
            [{"field": "body", "message": "Atteso un oggetto JSON"}],
        )
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]) or "body", "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError("Payload non valido: controlla i campi indicati.", errors) from None


def parse_registration(body: Any) -> RegistrationIntent:
    return _validate(RegistrationIntent, body)


def parse_invite_acceptance(body: Any) -> InviteAcceptIn:
    return _validate(InviteAcceptIn, body)
