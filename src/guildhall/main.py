"""CLI entrypoint for guildhall."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from guildhall import __version__
from guildhall.commission.controllers import (
    CommissionCliController,
    CommissionRefCommand,
    CreateCommissionCommand,
    DaemonCommand,
    ListCommissionsCommand,
    NoteCommand,
    RegisterProjectCommand,
    UpdateCommissionCommand,
)
from guildhall.commission.errors import CommissionError

click.rich_click.USE_MARKDOWN = True
COMMISSION_CONTROLLER = CommissionCliController()

_home_option = click.option(
    "--home",
    type=click.Path(path_type=Path),
    default=None,
    help="Guild Hall home directory. Defaults to GUILDHALL_HOME or ~/.guild-hall.",
)


@click.group()
@click.version_option(version=__version__, prog_name="guildhall")
def guildhall() -> None:
    """Guild Hall commission CLI."""

    logging.basicConfig(
        level=os.getenv("GUILDHALL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@guildhall.command("daemon")
@_home_option
@click.option(
    "--packages-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory scanned for worker packages. Defaults to <home>/packages.",
)
def daemon(home: Path | None, packages_dir: Path | None) -> None:
    """Run the commission daemon in the foreground on its Unix socket."""

    _run(
        lambda: COMMISSION_CONTROLLER.run_daemon(
            DaemonCommand(home=home, packages_dir=packages_dir),
        ),
    )


@guildhall.command("register")
@_home_option
@click.argument("name")
@click.argument("path", type=click.Path(path_type=Path, file_okay=False))
@click.option("--description", default="", help="Optional project description.")
def register(home: Path | None, name: str, path: Path, description: str) -> None:
    """Register a project directory in `config.yaml`."""

    _run(
        lambda: COMMISSION_CONTROLLER.register_project(
            RegisterProjectCommand(home=home, name=name, path=path, description=description),
        ),
    )


@guildhall.command("workers")
@_home_option
def workers(home: Path | None) -> None:
    """List worker packages known to the daemon."""

    _run(lambda: COMMISSION_CONTROLLER.workers(home))


@guildhall.group()
def commission() -> None:
    """Commission commands."""


@commission.command("create")
@_home_option
@click.option("--project", "project_name", required=True, help="Registered project name.")
@click.option("--title", required=True, help="Commission title.")
@click.option("--worker", "worker_name", required=True, help="Worker package name.")
@click.option("--prompt", required=True, help="Instructions for the worker.")
@click.option(
    "--dependency",
    "dependencies",
    multiple=True,
    help="Artifact path the commission depends on. Can be repeated.",
)
@click.option("--max-turns", type=click.IntRange(min=1), default=None, help="Turn limit.")
@click.option(
    "--max-budget-usd",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Budget limit in USD.",
)
def commission_create(  # noqa: PLR0913
    home: Path | None,
    project_name: str,
    title: str,
    worker_name: str,
    prompt: str,
    dependencies: tuple[str, ...],
    max_turns: int | None,
    max_budget_usd: float | None,
) -> None:
    """Create a pending commission."""

    _run(
        lambda: COMMISSION_CONTROLLER.create(
            CreateCommissionCommand(
                home=home,
                project_name=project_name,
                title=title,
                worker_name=worker_name,
                prompt=prompt,
                dependencies=dependencies,
                max_turns=max_turns,
                max_budget_usd=max_budget_usd,
            ),
        ),
    )


@commission.command("update")
@_home_option
@click.argument("commission_id")
@click.option("--prompt", default=None, help="New prompt.")
@click.option(
    "--dependency",
    "dependencies",
    multiple=True,
    help="Replacement dependency list. Can be repeated.",
)
@click.option("--max-turns", type=click.IntRange(min=1), default=None, help="Turn limit.")
@click.option(
    "--max-budget-usd",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Budget limit in USD.",
)
def commission_update(  # noqa: PLR0913
    home: Path | None,
    commission_id: str,
    prompt: str | None,
    dependencies: tuple[str, ...],
    max_turns: int | None,
    max_budget_usd: float | None,
) -> None:
    """Edit a commission that is still pending."""

    _run(
        lambda: COMMISSION_CONTROLLER.update(
            UpdateCommissionCommand(
                home=home,
                commission_id=commission_id,
                prompt=prompt,
                dependencies=dependencies or None,
                max_turns=max_turns,
                max_budget_usd=max_budget_usd,
            ),
        ),
    )


@commission.command("dispatch")
@_home_option
@click.argument("commission_id")
def commission_dispatch(home: Path | None, commission_id: str) -> None:
    """Dispatch a pending commission to its worker."""

    _run(
        lambda: COMMISSION_CONTROLLER.dispatch(
            CommissionRefCommand(home=home, commission_id=commission_id),
        ),
    )


@commission.command("redispatch")
@_home_option
@click.argument("commission_id")
def commission_redispatch(home: Path | None, commission_id: str) -> None:
    """Reset a failed or cancelled commission and dispatch it again."""

    _run(
        lambda: COMMISSION_CONTROLLER.redispatch(
            CommissionRefCommand(home=home, commission_id=commission_id),
        ),
    )


@commission.command("cancel")
@_home_option
@click.argument("commission_id")
def commission_cancel(home: Path | None, commission_id: str) -> None:
    """Cancel a running commission."""

    _run(
        lambda: COMMISSION_CONTROLLER.cancel(
            CommissionRefCommand(home=home, commission_id=commission_id),
        ),
    )


@commission.command("note")
@_home_option
@click.argument("commission_id")
@click.argument("content")
def commission_note(home: Path | None, commission_id: str, content: str) -> None:
    """Append a user note to the commission timeline."""

    _run(
        lambda: COMMISSION_CONTROLLER.note(
            NoteCommand(home=home, commission_id=commission_id, content=content),
        ),
    )


@commission.command("show")
@_home_option
@click.argument("commission_id")
def commission_show(home: Path | None, commission_id: str) -> None:
    """Show a commission artifact, read directly from disk."""

    _run(
        lambda: COMMISSION_CONTROLLER.show(
            CommissionRefCommand(home=home, commission_id=commission_id),
        ),
    )


@commission.command("list")
@_home_option
@click.option("--project", "project_name", default=None, help="Only this project.")
@click.option("--status", default=None, help="Only commissions in this status.")
def commission_list(home: Path | None, project_name: str | None, status: str | None) -> None:
    """List commissions across registered projects."""

    _run(
        lambda: COMMISSION_CONTROLLER.list_commissions(
            ListCommissionsCommand(home=home, project_name=project_name, status=status),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (CommissionError, ValueError, TypeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    guildhall()
