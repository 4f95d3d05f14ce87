from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import allure
import pytest

from host_relay.bus.nudge import WakeCommandError, WakeNudger, build_wake_args

pytestmark = [
    allure.epic("External Client Protocol"),
    allure.feature("Wake Nudge"),
]


def test_build_wake_args_quotes_placeholders_on_posix() -> None:
    args = build_wake_args(
        "focus-app --project {project_name} --id {project_id}",
        project_name="My Game",
        project_id="0A1B2C3D",
        os_name="posix",
    )

    assert args == ["focus-app", "--project", "My Game", "--id", "0A1B2C3D"]


def test_build_wake_args_renders_command_line_on_windows() -> None:
    args = build_wake_args(
        "focus-app {project_name}",
        project_name="My Game",
        project_id="0A1B2C3D",
        os_name="nt",
    )

    assert args == 'focus-app "My Game"'


def test_build_wake_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(WakeCommandError, match="Unsupported wake command placeholder"):
        build_wake_args("wake {window}", project_name="p", project_id="i", os_name="posix")


def test_empty_template_is_a_no_op(monkeypatch) -> None:
    def unexpected_run(*args, **kwargs):
        raise AssertionError("subprocess must not run")

    monkeypatch.setattr(subprocess, "run", unexpected_run)
    nudger = WakeNudger("", project_name="p", project_id="i")

    assert nudger.enabled is False
    assert nudger.nudge() is False
    assert nudger.attempts == 0


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX argv rendering")
def test_nudge_runs_the_wake_command(tmp_path: Path) -> None:
    marker = tmp_path / "woke.txt"
    script = tmp_path / "wake.py"
    script.write_text(
        "import sys\nfrom pathlib import Path\nPath(sys.argv[1]).write_text(sys.argv[2])\n",
        "utf-8",
    )
    nudger = WakeNudger(
        f"{sys.executable} {script} {marker} {{project_id}}",
        project_name="demo",
        project_id="0A1B2C3D",
    )

    assert nudger.nudge() is True
    assert marker.read_text() == "0A1B2C3D"


def test_failing_wake_command_is_logged_not_raised(caplog) -> None:
    nudger = WakeNudger("definitely-not-a-real-binary-xyz", project_name="p", project_id="i")

    assert nudger.nudge() is False
    assert nudger.attempts == 1
    assert "Wake command failed" in caplog.text
