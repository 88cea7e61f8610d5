from clinic_backend import cli
from clinic_backend.models import NotificationKind
from clinic_backend.notifications import render
from clinic_backend.seed import DEMO_IDENTIFIER
from clinic_backend.tools.relink_history import relink_all


def _run(container, *argv):
    cli.main(list(argv), container=container)


def test_init_is_idempotent(container, datastore, capsys):
    _run(container, "init")
    _run(container, "init")

    assert len(datastore.query_many("organizations", {})) == 1
    assert len(datastore.query_many("unregistered_patients", {"identifier": DEMO_IDENTIFIER})) == 1
    assert "seed completato" in capsys.readouterr().out


def test_list_accounts(container, datastore, capsys):
    datastore.insert("users", {"email": "doc@example.com", "name": "Luis", "role": "MEDICO"})
    _run(container, "list", "accounts")
    assert "doc@example.com | MEDICO" in capsys.readouterr().out


def test_add_unregistered_patient_and_consultation(container, datastore, capsys):
    _run(container, "add-unregistered-patient", "--first-name", "Ana", "--last-name", "Pérez", "--identifier", "V1")
    shadow = datastore.query_one("unregistered_patients", {"identifier": "V1"})
    assert shadow is not None

    _run(container, "add-consultation", "--unregistered-id", shadow["id"], "--motivo", "febbre")
    rows = datastore.query_many("consultations", {"unregistered_patient_id": shadow["id"]})
    assert [r["chief_complaint"] for r in rows] == ["febbre"]


def test_notifications_outbox(container, capsys):
    container.notifier.send("ana@example.com", NotificationKind.WELCOME, {"name": "Ana", "role": "PACIENTE"})

    _run(container, "notifications", "--mark-sent")
    out = capsys.readouterr().out
    assert "WELCOME | ana@example.com" in out
    assert "Benvenuto Ana!" in out
    assert container.notifier.pending() == []

    _run(container, "notifications")
    assert "Nessuna notifica pendente." in capsys.readouterr().out


def test_mark_sent_twice(container):
    nid = container.notifier.send("ana@example.com", NotificationKind.WELCOME, {"name": "Ana"})
    assert container.notifier.mark_sent(nid) is True
    assert container.notifier.mark_sent(nid) is False


def test_render_ignores_missing_values():
    msg = render(NotificationKind.VERIFICATION_PENDING, {"name": "Ana", "verification_url": None})
    assert msg.startswith("Ciao Ana,")


def test_relink_history_moves_leftover_rows(container, datastore, capsys):
    _run(container, "init")
    shadow = datastore.query_one("unregistered_patients", {"identifier": DEMO_IDENTIFIER})
    patient = datastore.insert(
        "patients", {"first_name": "Ana", "last_name": "Pérez", "unregistered_patient_id": shadow["id"]}
    )

    _run(container, "relink-history")
    assert f"{patient['id']} <- {shadow['id']}: 2 righe" in capsys.readouterr().out
    assert len(datastore.query_many("consultations", {"patient_id": patient["id"]})) == 1
    assert len(datastore.query_many("appointments", {"patient_id": patient["id"]})) == 1

    [(_, report)] = relink_all(datastore)
    assert report.total == 0
