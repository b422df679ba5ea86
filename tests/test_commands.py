"""Tests for the command execution boundary."""

from __future__ import annotations

import pytest

from nixos_inplace.commands import CommandOutput, CommandRunner
from nixos_inplace.errors import ExternalToolFailure


def test_output_returns_stdout_on_success() -> None:
    runner = CommandRunner(run=lambda cmd: CommandOutput(stdout="x86_64\n"))

    assert runner.output(["uname", "-m"]) == "x86_64\n"


def test_output_raises_on_failure() -> None:
    runner = CommandRunner(run=lambda cmd: CommandOutput(stdout="junk", returncode=2))

    with pytest.raises(ExternalToolFailure) as excinfo:
        runner.output(["findmnt", "/"])

    assert excinfo.value.returncode == 2
    assert excinfo.value.command == ["findmnt", "/"]
    assert "exited with status 2" in str(excinfo.value)


def test_output_can_ignore_failure() -> None:
    runner = CommandRunner(run=lambda cmd: CommandOutput(stdout="junk", returncode=1))

    assert runner.output(["swapon", "--show"], ignore_errors=True) == ""


def test_execute_passes_environment_and_raises() -> None:
    seen = []

    def call(cmd, env):
        seen.append((list(cmd), env))
        return 0 if cmd[0] == "true" else 3

    runner = CommandRunner(call=call)
    runner.execute(["true"], env={"A": "1"})
    with pytest.raises(ExternalToolFailure) as excinfo:
        runner.execute(["false"])

    assert seen == [(["true"], {"A": "1"}), (["false"], None)]
    assert excinfo.value.returncode == 3


def test_default_run_reports_missing_binary() -> None:
    runner = CommandRunner()

    result = runner.run(["nixos-inplace-definitely-missing-binary"])

    assert result.returncode == 127


def test_default_list_dir_returns_full_paths(tmp_path) -> None:
    (tmp_path / "b").write_text("")
    (tmp_path / "a").write_text("")
    runner = CommandRunner()

    assert runner.list_dir(str(tmp_path)) == [str(tmp_path / "a"), str(tmp_path / "b")]
    assert runner.list_dir(str(tmp_path / "missing")) == []
