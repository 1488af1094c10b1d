"""
Tests for the acctl command line interface.

Commands run through typer's CliRunner against a Controller backed by
FakeGateway.
"""

import json
import subprocess

import pytest
from typer.testing import CliRunner

from acctl import cli
from acctl.api import Controller
from acctl.ctl import Ctl
from acctl.errors import AccountNotFoundError
from tests.conftest import account_id

runner = CliRunner()


@pytest.fixture
def pool(gateway):
    gateway.add(1, "a", Ctl(tags=["dev"]))
    gateway.add(2, "b", Ctl(tags=["dev"]))
    gateway.add(3, "c", Ctl(owner="alice", desc="mine"))
    gateway.add(4, "d")
    return gateway


@pytest.fixture(autouse=True)
def controller(monkeypatch, config, pool):
    """Route every command to one Controller and reset global CLI state."""
    ctl = Controller(config, gateway=pool)
    monkeypatch.setattr(cli, "_make_controller", lambda: ctl)
    monkeypatch.setattr(cli, "_json_output", False)
    return ctl


def run(*args):
    return runner.invoke(cli.app, list(args))


class TestList:

    def test_table(self):
        result = run("list")
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].split() == ["ID", "NAME", "OWNER", "TAGS", "DESC", "ERROR"]
        assert len(lines) == 4
        assert "alice" in lines[3]

    def test_json(self):
        result = run("--json", "list", "err")
        assert result.exit_code == 0, result.output
        rows = json.loads(result.output)
        assert [r["name"] for r in rows] == ["a", "b", "c", "d"]
        assert rows[3]["error"] == "account control not initialized"

    def test_empty(self):
        result = run("list", "nothing")
        assert result.exit_code == 0
        assert result.output == ""

    def test_unknown_account(self):
        result = run("list", "a,zzz")
        assert result.exit_code == 1
        assert isinstance(result.exception, AccountNotFoundError)


class TestAlloc:

    def test_num_and_spec(self, pool):
        result = run("alloc", "1", "dev")
        assert result.exit_code == 0, result.output
        owners = [pool.iams[account_id(n)].get_ctl().owner for n in (1, 2)]
        assert sorted(owners) == ["", "alice"]

    def test_spec_only(self, pool):
        result = run("alloc", "dev")
        assert result.exit_code == 0, result.output
        assert pool.iams[account_id(1)].get_ctl().owner == "alice"
        assert pool.iams[account_id(2)].get_ctl().owner == "alice"

    def test_owner_option(self, pool):
        result = run("alloc", "1", "dev", "--owner", "bob")
        assert result.exit_code == 0, result.output
        assert "bob" in result.output

    @pytest.mark.parametrize("args", [("0",), ("101",), ("x", "y")])
    def test_bad_arguments(self, args):
        assert run("alloc", *args).exit_code == 2

    def test_shortage(self):
        result = run("alloc", "3")
        assert result.exit_code == 1
        assert "need 1 more account" in str(result.exception)


class TestFreeUpdate:

    def test_free(self, pool):
        result = run("free")
        assert result.exit_code == 0, result.output
        assert "OK" in result.output
        assert pool.iams[account_id(3)].get_ctl() == Ctl(desc="mine")

    def test_update(self, pool):
        result = run("update", "a", "--tags", "x,!dev", "--desc", "scratch")
        assert result.exit_code == 0, result.output
        assert pool.iams[account_id(1)].get_ctl() == Ctl(desc="scratch", tags=["x"])

    def test_update_requires_change(self):
        result = run("update", "a")
        assert result.exit_code == 2
        assert "--tags or --desc" in result.output

    def test_update_invalid_tag(self):
        result = run("update", "a", "--tags", "err")
        assert result.exit_code == 2
        assert "invalid tag" in result.output

    def test_tag(self, pool):
        result = run("tag", "big", "dev")
        assert result.exit_code == 0, result.output
        assert pool.iams[account_id(2)].get_ctl().tags == ["big", "dev"]


class TestInitRmctl:

    def test_init_by_id(self, pool):
        result = run("init", account_id(4), "--tags", "x,y", "--desc", "new")
        assert result.exit_code == 0, result.output
        assert pool.iams[account_id(4)].get_ctl() == Ctl(desc="new", tags=["x", "y"])

    def test_init_reports_initialized(self, pool):
        result = run("init", "err")
        assert result.exit_code == 1
        assert "ERROR: already initialized" in result.output
        assert pool.iams[account_id(4)].get_ctl() == Ctl(tags=["init"])

    def test_init_negated_tag(self):
        result = run("init", "err", "--tags", "!x")
        assert result.exit_code == 2

    def test_rmctl_requires_confirm(self, pool):
        result = run("rmctl", "a")
        assert result.exit_code == 2
        assert pool.iams[account_id(1)].roles

    def test_rmctl(self, pool):
        result = run("rmctl", "a", "--confirm")
        assert result.exit_code == 0, result.output
        assert not pool.iams[account_id(1)].roles


class TestCreate:

    def test_create(self, pool):
        result = run("--json", "create", "n1", "n2", "--email", "{name}@example.com")
        assert result.exit_code == 0, result.output
        rows = json.loads(result.output)
        assert [r["name"] for r in rows] == ["n1", "n2"]
        assert all(r["result"] == "OK" for r in rows)
        assert rows[0]["email"] == "n1@example.com"

    def test_create_failure(self, pool):
        pool.orgs.fail["n1"] = "EMAIL_ALREADY_EXISTS"
        result = run("create", "n1", "--email", "ops@example.com")
        assert result.exit_code == 1
        assert "EMAIL_ALREADY_EXISTS" in result.output

    def test_bad_template(self):
        result = run("create", "n1", "n2", "--email", "ops@example.com")
        assert result.exit_code == 2


class TestCreds:

    def test_json(self):
        result = run("--json", "creds")
        assert result.exit_code == 0, result.output
        rows = json.loads(result.output)
        assert [r["name"] for r in rows] == ["c"]
        assert rows[0]["access_key_id"] == account_id(3)

    def test_error_exit(self):
        result = run("creds", "c,d")
        assert result.exit_code == 1
        assert "account control not initialized" in result.output


class FakeRun:
    """Stands in for subprocess.run; each call returns the next queued status."""

    def __init__(self):
        self.calls = []
        self.status = []

    def __call__(self, args, executable=None, env=None):
        self.calls.append((args, executable, env))
        return subprocess.CompletedProcess(args, self.status.pop(0) if self.status else 0)


class TestExec:

    @pytest.fixture
    def fake_run(self, monkeypatch):
        fake = FakeRun()
        monkeypatch.setattr(cli.shutil, "which", lambda name: "/usr/bin/" + name)
        monkeypatch.setattr(cli.subprocess, "run", fake)
        monkeypatch.setenv("AWS_PROFILE", "admin")
        return fake

    def test_runs_per_account(self, fake_run):
        result = run("exec", "dev", "aws", "s3", "ls", "--output", "json")
        assert result.exit_code == 0, result.output
        assert len(fake_run.calls) == 2
        args, executable, env = fake_run.calls[0]
        assert args == ["aws", "s3", "ls", "--output", "json"]
        assert executable == "/usr/bin/aws"
        assert env["AWS_ACCOUNT_ID"] == account_id(1)
        assert env["AWS_ACCOUNT_NAME"] == "a"
        assert env["AWS_ACCESS_KEY_ID"] == account_id(1)
        assert env["AWS_SECRET_ACCESS_KEY"] == "secret"
        assert env["AWS_SESSION_TOKEN"] == "token"
        assert "AWS_PROFILE" not in env
        assert fake_run.calls[1][2]["AWS_ACCOUNT_NAME"] == "b"
        assert f"===> Account {account_id(2)} (b)" in result.output

    def test_command_failure(self, fake_run):
        fake_run.status.append(1)
        result = run("exec", "dev", "false")
        assert result.exit_code == 1
        assert len(fake_run.calls) == 2
        assert "1 command(s) failed (0 due to invalid credentials)" in result.output

    def test_usage_error_aborts(self, fake_run):
        fake_run.status.append(2)
        result = run("exec", "dev", "aws", "--bogus")
        assert result.exit_code == 1
        assert len(fake_run.calls) == 1
        assert "abort due to command usage error" in result.output

    def test_invalid_credentials(self, fake_run):
        result = run("exec", "c,d", "true")
        assert result.exit_code == 1
        assert len(fake_run.calls) == 1
        assert "1 command(s) failed (1 due to invalid credentials)" in result.output

    def test_command_not_found(self, fake_run, monkeypatch):
        monkeypatch.setattr(cli.shutil, "which", lambda name: None)
        result = run("exec", "dev", "nope")
        assert result.exit_code == 2
        assert not fake_run.calls


class TestMain:

    def test_unexpected_error_logged(self, monkeypatch, tmp_path, capsys):
        def boom():
            raise RuntimeError("boom")

        monkeypatch.setenv("ACCTL_HOME", str(tmp_path))
        monkeypatch.setattr(cli, "app", boom)
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 1
        assert "Error: boom" in capsys.readouterr().err
        log = (tmp_path / "acctl-errors.log").read_text()
        assert "RuntimeError: boom" in log
        assert "acctl CLI" in log

    def test_interrupt(self, monkeypatch):
        def interrupt():
            raise KeyboardInterrupt

        monkeypatch.setattr(cli, "app", interrupt)
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 130
