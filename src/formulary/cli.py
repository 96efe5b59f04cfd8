"""The `formulary` command-line interface."""

import importlib.metadata
import os
from pathlib import Path
import shutil

import click

from .config import PREFIX_ENV_VAR, EngineConfig, load_config
from .engine.orchestrator import InstallReport, Orchestrator
from .exceptions import (
    ConfigError,
    FormularyError,
    ParseError,
    ResolutionError,
    UnknownDependencyError,
)
from .formula import load_formulae
from .models import Formula, FormulaState
from .receipts import FileReceiptStore
from .resolver import dependents
from .scaffolding.generator import scaffold_formula

try:
    __version__ = importlib.metadata.version("formulary")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0-dev"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_RESOLUTION = 2


class Session:
    """Configuration and lazily loaded formulae shared by all commands."""

    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self._formulae: dict[str, Formula] | None = None
        self.parse_errors: list[ParseError] = []

    @property
    def formulae(self) -> dict[str, Formula]:
        if self._formulae is None:
            self._formulae, self.parse_errors = load_formulae(self.config.formula_dir)
        return self._formulae

    def store(self) -> FileReceiptStore:
        return FileReceiptStore(self.config.receipts_dir)

    def orchestrator(self) -> Orchestrator:
        return Orchestrator(self.config, self.store())

    def parse_error_for(self, name: str) -> ParseError | None:
        if self._formulae is None:
            self._formulae, self.parse_errors = load_formulae(self.config.formula_dir)
        return next((e for e in self.parse_errors if e.formula == name), None)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(
    __version__,
    "-V",
    "--version",
    prog_name="formulary",
    message="%(prog)s version %(version)s",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, resolve_path=True, path_type=Path),
    help="Path to formulary.toml (defaults to ./formulary.toml if present).",
)
@click.option(
    "--prefix",
    envvar=PREFIX_ENV_VAR,
    type=click.Path(file_okay=False, resolve_path=True, path_type=Path),
    help=f"Install prefix substituted for ${{prefix}} [env: {PREFIX_ENV_VAR}].",
)
@click.option(
    "--formula-dir",
    type=click.Path(file_okay=False, resolve_path=True, path_type=Path),
    help="Directory holding *.toml formula declarations.",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, resolve_path=True, path_type=Path),
    help="Directory for receipts, locks and build directories.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    prefix: Path | None,
    formula_dir: Path | None,
    state_dir: Path | None,
    verbose: bool,
) -> None:
    """Builds and installs native libraries from declarative formulas."""
    if verbose:
        os.environ["PYVIDER_LOG_LEVEL"] = "DEBUG"
    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.UsageError(str(e)) from e
    config = config.with_overrides(
        prefix=prefix, formula_dir=formula_dir, state_dir=state_dir
    )
    ctx.obj = Session(config)


@cli.command("install")
@click.argument("names", nargs=-1, required=True)
@click.option("--force", is_flag=True, help="Reinstall even when the installed ref is current.")
@click.option("--dry-run", is_flag=True, help="Print the resolved plan and exit.")
@click.option("--jobs", "-j", type=click.IntRange(min=1), help="Formulas to build in parallel.")
@click.option("--lock-timeout", type=click.FloatRange(min=0), help="Seconds to wait for a formula lock.")
@click.option(
    "--clean-on-cancel",
    is_flag=True,
    help="Delete partially built directories when cancelled.",
)
@click.pass_obj
def install_command(
    session: Session,
    names: tuple[str, ...],
    force: bool,
    dry_run: bool,
    jobs: int | None,
    lock_timeout: float | None,
    clean_on_cancel: bool,
) -> None:
    """Installs formulas and their build dependencies."""
    known = session.formulae
    orchestrator = session.orchestrator()

    try:
        if dry_run:
            plan = orchestrator.plan(names, known)
            click.echo("Installation plan:")
            for entry in plan:
                note = " (already satisfied)" if entry.already_satisfied else ""
                click.echo(f"  {entry.name}{note}")
            raise click.exceptions.Exit(EXIT_OK)

        options = orchestrator.default_options(
            force=force,
            jobs=jobs,
            lock_timeout=lock_timeout,
            clean_on_cancel=clean_on_cancel,
        )
        click.echo(f"🚀 Installing {', '.join(names)}...")
        report = orchestrator.install_many(names, known, options)
    except UnknownDependencyError as e:
        _report_resolution_error(session, e)
        raise click.exceptions.Exit(EXIT_RESOLUTION) from e
    except ResolutionError as e:
        click.secho(f"❌ Cannot resolve dependencies: {e}", fg="red", err=True)
        raise click.exceptions.Exit(EXIT_RESOLUTION) from e

    _print_report(report)
    raise click.exceptions.Exit(report.exit_code)


@cli.command("uninstall")
@click.argument("name")
@click.pass_obj
def uninstall_command(session: Session, name: str) -> None:
    """Removes the receipt of an installed formula."""
    orchestrator = session.orchestrator()
    installed = {receipt.name for receipt in orchestrator.store.list()}
    still_needed = [d for d in dependents(name, session.formulae) if d in installed]
    if still_needed:
        click.secho(
            f"⚠️  {name} is a build dependency of installed formula(e): {', '.join(still_needed)}",
            fg="yellow",
        )
    try:
        removed = orchestrator.uninstall(name)
    except FormularyError as e:
        click.secho(f"❌ Uninstall failed: {e}", fg="red", err=True)
        raise click.exceptions.Exit(EXIT_FAILED) from e

    if removed:
        click.secho(f"✅ Uninstalled {name}.", fg="green")
    else:
        click.secho(f"i️ {name} is not installed, nothing to remove.", fg="yellow")


@cli.command("list")
@click.pass_obj
def list_command(session: Session) -> None:
    """Lists installed formulas with their versions."""
    for receipt in session.store().list():
        suffix = "" if receipt.verified else " (unverified)"
        click.echo(f"{receipt.name} {receipt.version}{suffix}")


@cli.command("test")
@click.argument("name")
@click.pass_obj
def test_command(session: Session, name: str) -> None:
    """Re-runs the test steps of an installed formula."""
    orchestrator = session.orchestrator()
    try:
        receipt = orchestrator.test(name, session.formulae)
    except FormularyError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        raise click.exceptions.Exit(EXIT_FAILED) from e

    if receipt.state == FormulaState.INSTALLED:
        click.secho(f"✅ {name} passed its tests.", fg="green")
        return

    failing = next((s for s in receipt.step_log if s.phase == "test" and not s.succeeded), None)
    click.secho(f"❌ {name} failed its tests.", fg="red", err=True)
    if failing is not None:
        click.echo(f"  Step: {failing.label} {failing.command}", err=True)
        if failing.output_tail:
            click.echo(failing.output_tail.rstrip(), err=True)
    raise click.exceptions.Exit(EXIT_FAILED)


@cli.command("info")
@click.argument("name")
@click.pass_obj
def info_command(session: Session, name: str) -> None:
    """Shows a formula's metadata and installation state."""
    formula = session.formulae.get(name)
    if formula is None:
        error = session.parse_error_for(name)
        message = str(error) if error else f"Unknown formula '{name}'."
        click.secho(f"❌ {message}", fg="red", err=True)
        raise click.exceptions.Exit(EXIT_FAILED)

    click.echo(f"{formula.name}: {formula.description}")
    click.echo(f"  Homepage: {formula.homepage}")
    click.echo(f"  License: {formula.license}")
    source = formula.source
    detail = source.checksum if source.is_archive else f"branch {source.ref}"
    click.echo(f"  Source: {source.type} {source.url} ({detail})")
    deps = ", ".join(formula.build_dependencies) or "none"
    click.echo(f"  Build dependencies: {deps}")
    if formula.required_tools:
        click.echo(f"  Required tools: {', '.join(formula.required_tools)}")
    receipt = session.store().get(name)
    if receipt is None:
        click.echo("  Not installed")
    else:
        click.echo(
            f"  Installed: {receipt.version} ({receipt.state}) at {receipt.install_prefix}"
        )


@cli.command("create")
@click.argument("name")
@click.option("--url", required=True, help="Git repository or archive URL.")
@click.option("--checksum", help="SHA-256 of the archive; selects an archive source.")
@click.option("--branch", default="main", show_default=True, help="Branch for git-head sources.")
@click.option("--description", default="", help="One-line description.")
@click.option("--license", "license_", default="", help="SPDX license identifier.")
@click.pass_obj
def create_command(
    session: Session,
    name: str,
    url: str,
    checksum: str | None,
    branch: str,
    description: str,
    license_: str,
) -> None:
    """Scaffolds a new formula declaration."""
    if not checksum and not url.endswith(".git"):
        raise click.UsageError(
            "Archive URLs need --checksum; use a .git URL for a git-head source."
        )
    try:
        path = scaffold_formula(
            name,
            session.config.formula_dir,
            url,
            checksum=checksum,
            branch=branch,
            description=description,
            license=license_,
        )
    except (ValueError, FileExistsError, FormularyError) as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        raise click.Abort() from e
    click.secho(f"✅ Created {path}", fg="green")


@cli.command("clean")
@click.pass_obj
def clean_command(session: Session) -> None:
    """Removes leftover build directories."""
    click.echo("🧹 Cleaning build directories...")
    builds_dir = session.config.builds_dir
    if builds_dir.exists():
        shutil.rmtree(builds_dir)
        click.secho(f"✅ Removed build directory: {builds_dir}", fg="green")
    else:
        click.secho("i️ Build directory not found, nothing to clean.", fg="yellow")


def _report_resolution_error(session: Session, error: UnknownDependencyError) -> None:
    parse_error = session.parse_error_for(error.missing)
    if parse_error is not None:
        click.secho(f"❌ Formula '{error.missing}' is invalid: {parse_error}", fg="red", err=True)
    else:
        click.secho(f"❌ Cannot resolve dependencies: {error}", fg="red", err=True)


def _print_report(report: InstallReport) -> None:
    click.echo("\n" + "=" * 20 + " Summary " + "=" * 20)
    for name in report.plan.names:
        outcome = report.outcomes[name]
        if outcome.state == FormulaState.INSTALLED:
            note = " (already installed)" if outcome.reused else ""
            click.secho(f"✅ {name}{note}", fg="green")
        elif outcome.state == FormulaState.INSTALLED_UNVERIFIED:
            click.secho(f"⚠️  {name} installed, but its tests failed", fg="yellow")
        else:
            click.secho(f"❌ {name}: {outcome.error}", fg="red", err=True)
            if outcome.error is not None and outcome.error.output_tail:
                click.echo(outcome.error.output_tail.rstrip(), err=True)


main = cli

if __name__ == "__main__":
    main()
