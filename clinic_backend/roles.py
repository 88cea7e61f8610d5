from __future__ import annotations

import enum
from typing import Iterable


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    MEDICO = "MEDICO"
    ENFERMERA = "ENFERMERA"
    RECEPCION = "RECEPCION"
    FARMACIA = "FARMACIA"
    LABORATORIO = "LABORATORIO"
    PACIENTE = "PACIENTE"


# Ruoli "clinici" che possono condividere email/identificativo con un profilo paziente
CLINICIAN_ROLES = frozenset({Role.ADMIN, Role.MEDICO, Role.ENFERMERA, Role.RECEPCION})

_DECLARED: dict[Role, set[Role]] = {role: {Role.PACIENTE} for role in CLINICIAN_ROLES}


def _symmetric(declared: dict[Role, set[Role]]) -> dict[Role, frozenset[Role]]:
    table: dict[Role, set[Role]] = {role: set() for role in Role}
    for role, others in declared.items():
        for other in others:
            if other == role:
                continue  # stesso ruolo = duplicato, mai compatibile
            table[role].add(other)
            table[other].add(role)
    return {role: frozenset(others) for role, others in table.items()}


COMPATIBLE_ROLES = _symmetric(_DECLARED)


def parse_role(value: str | Role | None) -> Role | None:
    if value is None:
        return None
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().upper())
    except ValueError:
        return None


def are_compatible(a: str | Role, b: str | Role) -> bool:
    ra, rb = parse_role(a), parse_role(b)
    if ra is None or rb is None:
        return False
    return rb in COMPATIBLE_ROLES[ra]


def incompatible_roles(existing: Iterable[str], requested: str | Role) -> list[str]:
    """Ruoli esistenti che NON possono convivere con quello richiesto."""
    return [r for r in existing if not are_compatible(r, requested)]
