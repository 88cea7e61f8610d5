"""
Saga minimale: passi (azione, compensazione) eseguiti in ordine.

Il datastore non offre transazioni multi-riga: ogni record creato viene
annotato nel registro (`ledger`) e, al primo errore di un passo critico,
le compensazioni girano in ordine inverso. Una compensazione fallita non
blocca le successive e finisce nel CompensationReport.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from .errors import CompensationFailure, CompensationReport, NonFatalStepFailure, StepFailure

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Created:
    """Risorsa creata da un passo: senza id non può entrare nel registro."""
    kind: str
    id: str
    row: dict[str, Any] = field(default_factory=dict, compare=False)
    # False = risorsa preesistente riutilizzata, non va compensata
    owned: bool = True


@dataclass
class _LedgerEntry:
    kind: str
    id: str
    undo: Callable[[], None]


class Saga:
    def __init__(self, name: str) -> None:
        self.name = name
        self._ledger: list[_LedgerEntry] = []
        self.compensation: CompensationReport | None = None

    @property
    def created_resources(self) -> list[tuple[str, str]]:
        return [(e.kind, e.id) for e in self._ledger]

    def record(self, kind: str, id_: str, undo: Callable[[], None]) -> None:
        """Registra una risorsa creata fuori da run() (es. identità esterna)."""
        self._ledger.append(_LedgerEntry(kind, id_, undo))

    def run(
        self,
        step: str,
        action: Callable[[], Created | None],
        undo: Callable[[Created], None] | None = None,
    ) -> Created | None:
        """
        Esegue un passo critico.
        - action ritorna Created (risorsa nuova) oppure None (nulla da compensare)
        - su eccezione: compensa tutto e solleva StepFailure
        """
        try:
            created = action()
            if created is not None and not created.id:
                raise ValueError(f"{step}: record creato senza id")
        except Exception as e:
            logger.error("saga_step_failed", saga=self.name, step=step, error=str(e))
            report = self.compensate()
            if isinstance(e, StepFailure):
                e.compensation = report
                raise
            failure = StepFailure(step, f"Errore durante il passo '{step}'.", cause=e)
            failure.compensation = report
            raise failure from e

        if created is not None and created.owned and undo is not None:
            self._ledger.append(_LedgerEntry(created.kind, created.id, lambda: undo(created)))
        return created

    def compensate(self) -> CompensationReport:
        report = CompensationReport()
        for entry in reversed(self._ledger):
            try:
                entry.undo()
            except Exception as e:
                logger.error(
                    "compensation_delete_failed",
                    saga=self.name,
                    kind=entry.kind,
                    resource_id=entry.id,
                    error=str(e),
                )
                report.failures.append(CompensationFailure(entry.kind, entry.id, str(e)))
            else:
                report.deleted.append((entry.kind, entry.id))

        self._ledger.clear()
        self.compensation = report
        logger.warning(
            "saga_compensated",
            saga=self.name,
            deleted=len(report.deleted),
            failed=len(report.failures),
        )
        return report


# =========================
# Passi non critici (dopo il commit del saga)
# =========================
@dataclass(frozen=True)
class TaskOutcome:
    name: str
    ok: bool
    result: Any = None
    error: str | None = None


def run_non_critical(tasks: list[tuple[str, Callable[[], Any]]]) -> dict[str, TaskOutcome]:
    """
    Esegue ogni task in modo indipendente: un errore viene loggato
    e non interrompe i task successivi. Nessun retry.
    """
    outcomes: dict[str, TaskOutcome] = {}
    for name, fn in tasks:
        try:
            result = fn()
        except Exception as e:
            failure = NonFatalStepFailure(name, e)
            logger.warning("non_critical_task_failed", task=name, error=str(failure))
            outcomes[name] = TaskOutcome(name, False, error=str(e))
        else:
            outcomes[name] = TaskOutcome(name, True, result=result)
    return outcomes
