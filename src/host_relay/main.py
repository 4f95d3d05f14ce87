"""CLI entrypoint for host-relay."""

import logging
import sys
from pathlib import Path

import rich_click as click

from host_relay import __version__
from host_relay.bus.controllers import (
    CheckCommand,
    HostRelayCliController,
    HostServeCommand,
    HostSweepCommand,
    LedgerCommand,
    SubmitCommand,
)
from host_relay.bus.errors import HostRelayError
from host_relay.bus.models import Verdict

click.rich_click.USE_MARKDOWN = True
CONTROLLER = HostRelayCliController()

_PROJECT_ROOT_OPTION = click.option(
    "--project-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project root; defaults to HOST_RELAY_PROJECT_ROOT or the current directory.",
)
_VERBOSE_OPTION = click.option(
    "--verbose",
    is_flag=True,
    default=False,
    help="Trace to stderr.",
)


class _CheckCommand(click.RichCommand):
    """Usage errors of the check command exit with the internal-error code."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as error:
            error.exit_code = Verdict.ERROR.exit_code
            raise


@click.group()
@click.version_option(version=__version__, prog_name="host-relay")
def host_relay() -> None:
    """Filesystem message bus for a single-threaded host application."""


@host_relay.command("check", cls=_CheckCommand)
@click.option(
    "--include-warnings",
    is_flag=True,
    default=False,
    help="List warning diagnostics under DETAILS.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Overall wait budget in seconds; defaults to HOST_RELAY_CLIENT_TIMEOUT_SECONDS.",
)
@_VERBOSE_OPTION
@_PROJECT_ROOT_OPTION
def check(
    include_warnings: bool,
    timeout_seconds: float | None,
    verbose: bool,
    project_root: Path | None,
) -> None:
    """Request a compile from the host and wait for its verdict.

    Exit codes: 0 success, 1 compile errors, 2 timeout, 3 usage or internal error.
    """

    _configure_logging(verbose)
    result = CONTROLLER.check(
        CheckCommand(
            project_root=project_root,
            include_warnings=include_warnings,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(result.lines)
    sys.exit(result.exit_code)


@host_relay.command("submit")
@click.argument("request_file", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@_PROJECT_ROOT_OPTION
def submit(request_file: Path, project_root: Path | None) -> None:
    """Validate a request document and place it into the command queue."""

    try:
        lines = CONTROLLER.submit(SubmitCommand(project_root=project_root, request_file=request_file))
    except (HostRelayError, OSError, TypeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@host_relay.command("ledger")
@_PROJECT_ROOT_OPTION
def ledger(project_root: Path | None) -> None:
    """Show the current compile ledger record and whether it is locked."""

    _emit_lines(CONTROLLER.ledger(LedgerCommand(project_root=project_root)))


@host_relay.group()
def host() -> None:
    """Reference host runtime backed by the simulated host."""


@host.command("serve")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks; runs until interrupted when omitted.",
)
@_VERBOSE_OPTION
@_PROJECT_ROOT_OPTION
def host_serve(max_ticks: int | None, verbose: bool, project_root: Path | None) -> None:
    """Watch the queue and execute requests until interrupted."""

    _configure_logging(verbose)
    try:
        lines = CONTROLLER.serve(HostServeCommand(project_root=project_root, max_ticks=max_ticks))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@host.command("sweep")
@_VERBOSE_OPTION
@_PROJECT_ROOT_OPTION
def host_sweep(verbose: bool, project_root: Path | None) -> None:
    """Consume every request currently queued, once, without watching."""

    _configure_logging(verbose)
    try:
        lines = CONTROLLER.sweep(HostSweepCommand(project_root=project_root))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    host_relay()
