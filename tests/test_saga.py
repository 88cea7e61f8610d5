import pytest

from clinic_backend.errors import StepFailure
from clinic_backend.saga import Created, Saga, run_non_critical


def _step(log, kind, id_):
    def action():
        log.append(("create", kind))
        return Created(kind, id_)

    def undo(created):
        log.append(("delete", created.kind))

    return action, undo


def _boom():
    raise RuntimeError("insert fallita")


def test_successful_steps_are_recorded_in_order():
    log = []
    saga = Saga("test")
    for kind in ("organization", "patient", "account"):
        saga.run(kind, *_step(log, kind, f"{kind}-1"))

    assert saga.created_resources == [
        ("organization", "organization-1"),
        ("patient", "patient-1"),
        ("account", "account-1"),
    ]
    assert saga.compensation is None


def test_failure_compensates_in_reverse_order():
    log = []
    saga = Saga("test")
    saga.record("identity", "id-1", lambda: log.append(("delete", "identity")))
    saga.run("organization", *_step(log, "organization", "o-1"))
    saga.run("patient", *_step(log, "patient", "p-1"))

    with pytest.raises(StepFailure) as exc:
        saga.run("account", _boom)

    assert exc.value.step == "account"
    assert isinstance(exc.value.cause, RuntimeError)
    assert [entry for entry in log if entry[0] == "delete"] == [
        ("delete", "patient"),
        ("delete", "organization"),
        ("delete", "identity"),
    ]
    report = exc.value.compensation
    assert report.complete
    assert report.deleted == [("patient", "p-1"), ("organization", "o-1"), ("identity", "id-1")]
    assert saga.created_resources == []


def test_failed_undo_does_not_stop_the_others():
    deleted = []
    saga = Saga("test")
    saga.record("identity", "id-1", lambda: deleted.append("identity"))
    saga.run("organization", lambda: Created("organization", "o-1"), lambda c: _boom())
    saga.run("patient", lambda: Created("patient", "p-1"), lambda c: deleted.append("patient"))

    with pytest.raises(StepFailure) as exc:
        saga.run("account", _boom)

    report = exc.value.compensation
    assert deleted == ["patient", "identity"]
    assert not report.complete
    assert [(f.kind, f.resource_id) for f in report.failures] == [("organization", "o-1")]
    # l'errore verso il client resta quello del passo fallito
    assert exc.value.step == "account"


def test_created_without_id_is_a_failure():
    deleted = []
    saga = Saga("test")
    saga.run("organization", lambda: Created("organization", "o-1"), lambda c: deleted.append(c.id))

    with pytest.raises(StepFailure) as exc:
        saga.run("account", lambda: Created("account", ""), lambda c: deleted.append(c.id))

    assert exc.value.step == "account"
    assert deleted == ["o-1"]


def test_reused_resource_is_never_compensated():
    deleted = []
    saga = Saga("test")
    saga.run("account", lambda: Created("account", "a-1", owned=False), lambda c: deleted.append(c.id))

    assert saga.created_resources == []
    saga.compensate()
    assert deleted == []


def test_step_returning_none_records_nothing():
    saga = Saga("test")
    assert saga.run("organization", lambda: None, lambda c: None) is None
    assert saga.created_resources == []


def test_non_critical_tasks_are_independent():
    calls = []

    def ok(name):
        def fn():
            calls.append(name)
            return name.upper()

        return fn

    outcomes = run_non_critical([("a", ok("a")), ("b", _boom), ("c", ok("c"))])

    assert calls == ["a", "c"]
    assert outcomes["a"].ok and outcomes["a"].result == "A"
    assert not outcomes["b"].ok
    assert outcomes["b"].error == "insert fallita"
    assert outcomes["c"].ok
