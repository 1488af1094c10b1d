"""
CLI interface for shared account pool management.

Usage:
    acctl list "owner=me"
    acctl alloc 2 "!prod"
    acctl free
    acctl update "000000000001" --tags "dev,!stale" --desc "scratch"
    acctl exec "owner=me" aws s3 ls
"""

import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Controller, account_rows, create_rows, result_rows
from .config import get_config_dir, load_or_create_config
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode
from .tags import parse_tags

# Set ACCTL_VERBOSE=1 to enable debug mode via environment
if os.environ.get("ACCTL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)

# Upper limit on accounts per alloc or create
MAX_ACCOUNTS = 100


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"acctl {version('acctl')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_home_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _home_callback(value: Optional[Path]):
    global _home_override
    if value is not None:
        _home_override = value


app = typer.Typer(
    name="acctl",
    help="Shared AWS account pool management.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    home: Annotated[Optional[Path], typer.Option(
        "--home",
        envvar="ACCTL_HOME",
        help="Path to the acctl config directory",
        callback=_home_callback,
        is_eager=True,
    )] = None,
):
    """Shared AWS account pool management."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

SpecArgument = Annotated[
    str,
    typer.Argument(
        help="Account spec: comma-separated ids, names, tags, owner[!]=name, err",
        show_default=False,
    )
]


def _make_controller() -> Controller:
    config_dir = _home_override or get_config_dir()
    config = load_or_create_config(config_dir)
    configure_ops_log(config_dir)
    return Controller(config)


def _get_controller() -> Controller:
    """Create the controller, handling configuration errors gracefully."""
    try:
        return _make_controller()
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _format_table(rows: list[dict], columns: list[str]) -> str:
    """Align rows into columns with a header line."""
    if not rows:
        return ""
    header = [c.upper() for c in columns]
    cells = [[str(row.get(c, "")) for c in columns] for row in rows]
    widths = [max(len(h), *(len(r[i]) for r in cells)) for i, h in enumerate(header)]
    lines = []
    for r in [header] + cells:
        lines.append("  ".join(v.ljust(w) for v, w in zip(r, widths)).rstrip())
    return "\n".join(lines)


def _print_rows(rows: list[dict], columns: list[str]) -> None:
    if _get_json_output():
        typer.echo(json.dumps(rows, indent=2))
    else:
        out = _format_table(rows, columns)
        if out:
            typer.echo(out)


def _print_results(rows: list[dict]) -> None:
    _print_rows(rows, ["id", "name", "result"])
    if any(r["result"] != "OK" for r in rows):
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command("list")
def list_accounts(
    spec: Annotated[str, typer.Argument(
        help="Account spec (default: all initialized accounts)",
        show_default=False,
    )] = "",
    refresh: Annotated[bool, typer.Option(
        "--refresh", "-r",
        help="Reload the account list",
    )] = False,
):
    """List accounts and their control information."""
    ctl = _get_controller()
    rows = account_rows(ctl.accounts(spec, refresh=refresh))
    _print_rows(rows, ["id", "name", "owner", "tags", "desc", "error"])


@app.command()
def alloc(
    num_or_spec: Annotated[str, typer.Argument(
        metavar="[NUM] [SPEC]",
        help="Number of accounts to allocate and/or account spec",
        show_default=False,
    )],
    spec: Annotated[Optional[str], typer.Argument(hidden=True)] = None,
    owner: Annotated[Optional[str], typer.Option(
        "--owner",
        help="Override default owner name",
    )] = None,
):
    """
    Allocate accounts.

    Allocation assigns an owner to an account, preventing anyone else from
    allocating it until it is freed. If NUM is omitted, all matching free
    accounts are allocated. Otherwise, NUM accounts are picked at random.
    """
    try:
        num: Optional[int] = int(num_or_spec)
    except ValueError:
        if spec is not None:
            typer.echo("Error: first argument must be a number", err=True)
            raise typer.Exit(2)
        num, spec = None, num_or_spec
    if num is not None and not 1 <= num <= MAX_ACCOUNTS:
        typer.echo(f"Error: number of accounts must be between 1 and {MAX_ACCOUNTS}", err=True)
        raise typer.Exit(2)

    ctl = _get_controller()
    acs = ctl.alloc(num, spec or "", owner=owner)
    _print_rows(account_rows(acs), ["id", "name", "owner", "tags", "desc"])


@app.command()
def free(
    spec: Annotated[str, typer.Argument(
        help="Account spec (default: all accounts owned by you)",
        show_default=False,
    )] = "",
    force: Annotated[bool, typer.Option(
        "--force", "-f",
        help="Free accounts owned by anyone",
    )] = False,
):
    """Free allocated accounts."""
    ctl = _get_controller()
    _print_results(result_rows(ctl.free(spec, force=force)))


@app.command()
def update(
    spec: SpecArgument,
    tags: Annotated[Optional[str], typer.Option(
        "--tags", "-t",
        help="Comma-separated tags to set; prefix with ! to clear",
    )] = None,
    desc: Annotated[Optional[str], typer.Option(
        "--desc", "-d",
        help="New account description",
    )] = None,
):
    """Update account tags and/or description."""
    if tags is None and desc is None:
        typer.echo("Error: --tags or --desc is required", err=True)
        raise typer.Exit(2)
    ctl = _get_controller()
    try:
        acs = ctl.update(spec, tags=tags, desc=desc)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    _print_rows(account_rows(acs), ["id", "name", "owner", "tags", "desc", "error"])


@app.command()
def tag(
    tags: Annotated[str, typer.Argument(
        help="Comma-separated tags to set; prefix with ! to clear",
        show_default=False,
    )],
    spec: SpecArgument,
):
    """Set or clear account tags (shorthand for update --tags)."""
    update(spec, tags=tags, desc=None)


@app.command()
def init(
    spec: SpecArgument,
    owner: Annotated[str, typer.Option(
        "--owner",
        help="Initial owner",
    )] = "",
    desc: Annotated[str, typer.Option(
        "--desc", "-d",
        help="Initial description",
    )] = "",
    tags: Annotated[Optional[str], typer.Option(
        "--tags", "-t",
        help="Initial comma-separated tags (default: init)",
    )] = None,
):
    """
    Initialize account control information.

    Only accounts without control information are initialized. Such accounts
    are matched by id, by name, or by including "err" in the spec.
    """
    tag_list = None
    if tags is not None:
        try:
            set_, clear = parse_tags(tags)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(2)
        if clear:
            typer.echo("Error: initial tags cannot be negated", err=True)
            raise typer.Exit(2)
        tag_list = set_
    ctl = _get_controller()
    _print_results(result_rows(ctl.init(spec, owner=owner, desc=desc, tags=tag_list)))


@app.command()
def rmctl(
    spec: SpecArgument,
    confirm: Annotated[bool, typer.Option(
        "--confirm",
        help="Confirm deletion of account control information",
    )] = False,
):
    """Delete account control information."""
    if not confirm:
        typer.echo("Error: --confirm option required", err=True)
        raise typer.Exit(2)
    ctl = _get_controller()
    _print_results(result_rows(ctl.rmctl(spec)))


@app.command()
def creds(
    spec: Annotated[str, typer.Argument(
        help="Account spec (default: all accounts owned by you)",
        show_default=False,
    )] = "owner=me",
    renew: Annotated[bool, typer.Option(
        "--renew",
        help="Request new credentials even if cached ones are still valid",
    )] = False,
):
    """Print temporary credentials for matching accounts."""
    ctl = _get_controller()
    rows = ctl.creds(spec, renew=renew)
    _print_rows(rows, ["id", "name", "expires", "access_key_id", "secret_access_key",
                       "session_token", "error"])
    if any(r["error"] for r in rows):
        raise typer.Exit(1)


def _account_env(row: dict) -> dict:
    """Environment for a command run against one account."""
    env = {k: v for k, v in os.environ.items()
           if k not in ("AWS_PROFILE", "AWS_DEFAULT_PROFILE")}
    env.update({
        "AWS_ACCOUNT_ID": row["id"],
        "AWS_ACCOUNT_NAME": row["name"],
        "AWS_ACCESS_KEY_ID": row["access_key_id"],
        "AWS_SECRET_ACCESS_KEY": row["secret_access_key"],
        "AWS_SESSION_TOKEN": row["session_token"],
    })
    return env


@app.command(
    "exec",
    context_settings={"allow_interspersed_args": False, "ignore_unknown_options": True},
)
def exec_command(
    spec: SpecArgument,
    command: Annotated[list[str], typer.Argument(
        help="Command and arguments to run in each account",
        show_default=False,
    )],
):
    """
    Run a command in each matching account.

    The command runs once per account with AWS_ACCOUNT_ID, AWS_ACCOUNT_NAME
    and temporary credentials set in its environment. A usage error (exit
    status 2) from the first run stops the remaining runs.
    """
    path = shutil.which(command[0])
    if path is None:
        typer.echo(f"Error: command not found: {command[0]}", err=True)
        raise typer.Exit(2)

    ctl = _get_controller()
    creds_fail = cmd_fail = 0
    for row in ctl.creds(spec):
        typer.echo(f"===> Account {row['id']} ({row['name']})", err=True)
        if row["error"]:
            typer.echo(f"===> ERROR: {row['error']}", err=True)
            creds_fail += 1
            continue
        rc = subprocess.run(command, executable=path, env=_account_env(row)).returncode
        if rc != 0:
            typer.echo(f"===> ERROR: exit status {rc}", err=True)
            cmd_fail += 1
            if cmd_fail == 1 and creds_fail == 0 and rc == 2:
                typer.echo("Error: abort due to command usage error", err=True)
                raise typer.Exit(1)

    failed = creds_fail + cmd_fail
    if failed:
        typer.echo(
            f"Error: {failed} command(s) failed ({creds_fail} due to invalid credentials)",
            err=True,
        )
        raise typer.Exit(1)


@app.command()
def create(
    names: Annotated[list[str], typer.Argument(
        help="Names of the new accounts",
        show_default=False,
    )],
    email: Annotated[str, typer.Option(
        "--email", "-e",
        help="Root email address; {name} is replaced with the account name",
    )],
):
    """Create new accounts in the organization (master account only)."""
    if len(names) > MAX_ACCOUNTS:
        typer.echo(f"Error: at most {MAX_ACCOUNTS} accounts can be created at once", err=True)
        raise typer.Exit(2)
    ctl = _get_controller()
    try:
        results = ctl.create(names, email)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    rows = create_rows(results)
    _print_rows(rows, ["id", "name", "email", "result"])
    if any(r["result"] != "OK" for r in rows):
        raise typer.Exit(1)


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import explain_error, log_exception
        log_path = log_exception(e, context="acctl CLI")
        typer.echo(f"Error: {explain_error(e)}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
