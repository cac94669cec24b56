"""End-to-end run of the CLI on CSV exports."""

import importlib
import logging
from pathlib import Path

import pandas as pd
import pytest

import main as main_module
from main import main, parse_args
from notifier import Dispatcher
from survey_settings import Settings


def _write_exports(tmp_path):
    start = tmp_path / "start.csv"
    start.write_text(
        "session,email\n"
        "a,a@example.org\n"
        "b,b@example.org\n"
        "nomail,\n"
    )
    weekly = tmp_path / "weekly.csv"
    lines = ["session,created,expired"]
    # a: answered, missed, missed -> mild reminder
    # b: missed twice, answered, missed twice -> severe reminder
    # nomail: would be reminded but has no address
    # ghost: weekly data, never enrolled
    plan = {
        "a": [True, False, False],
        "b": [False, False, True, False, False],
        "nomail": [True, False, False],
        "ghost": [True, False, False],
    }
    base = pd.Timestamp("2024-01-05 12:00")
    for session, seq in plan.items():
        for i, active in enumerate(seq):
            ts = base + pd.Timedelta(weeks=i)
            expired = "" if active else str(ts + pd.Timedelta(days=2))
            lines.append(f"{session},{ts},{expired}")
    weekly.write_text("\n".join(lines) + "\n")
    return start, weekly


class FakeBackend:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append(to)


def test_dry_run_writes_tables(tmp_path):
    start, weekly = _write_exports(tmp_path)
    out = tmp_path / "out"
    rc = main(["--start-csv", str(start), "--weekly-csv", str(weekly), "--out", str(out), "--dry-run"],
              settings=Settings(email_backend="console"))
    assert rc == 0
    status = pd.read_csv(out / "status_table.csv")
    assert sorted(status["session"]) == ["a", "b"]
    queue = pd.read_csv(out / "remind_queue.csv")
    assert queue["email"].tolist() == ["b@example.org", "a@example.org"]
    assert not (out / "dispatch_report.csv").exists()


def test_run_dispatches_queue(tmp_path):
    start, weekly = _write_exports(tmp_path)
    out = tmp_path / "out"
    s = Settings(email_backend="console", send_interval_seconds=0)
    backend = FakeBackend()
    rc = main(["--start-csv", str(start), "--weekly-csv", str(weekly), "--out", str(out), "--workers", "2"],
              settings=s, dispatcher=Dispatcher(s, backend=backend, sleep=lambda _: None))
    assert rc == 0
    assert backend.sent == ["b@example.org", "a@example.org"]
    report = pd.read_csv(out / "dispatch_report.csv")
    assert report["ok"].all()
    assert report["template"].tolist() == ["severe", "mild"]


def test_csv_inputs_go_together():
    with pytest.raises(SystemExit):
        parse_args(["--start-csv", "start.csv"])


def test_import_leaves_logging_alone(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.append(kw))
    importlib.reload(main_module)
    assert calls == []


def test_cli_script_is_not_installed_as_a_module():
    tomllib = pytest.importorskip("tomllib")
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    modules = tomllib.loads(pyproject.read_text())["tool"]["setuptools"]["py-modules"]
    assert "main" not in modules
    assert "settings" not in modules
