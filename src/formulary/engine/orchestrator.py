"""Drives formulas through fetch, build, install, test and receipt writing."""

from collections.abc import Iterable, Iterator, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
import contextlib
from datetime import UTC, datetime
from pathlib import Path
import shutil
import tempfile

from attrs import define, evolve, field
from filelock import FileLock, Timeout
from pyvider.telemetry import logger

from ..config import EngineConfig
from ..exceptions import (
    CancelledError,
    DependencyFailedError,
    FormularyError,
    ExecutionError,
    InstallError,
    LockTimeoutError,
    MissingToolError,
    NotInstalledError,
    ReceiptError,
    UnknownDependencyError,
)
from ..models import (
    FORMULA_NAME_PATTERN,
    STATE_TRANSITIONS,
    CommandSpec,
    Formula,
    FormulaState,
    Receipt,
    ResolvedPlan,
    StepOutcome,
)
from ..receipts import ReceiptStore
from ..resolver import resolve
from .executor import CancelToken, Executor
from .fetcher import DefaultFetcher, SourceFetcher

PHASE_INSTALL = "install"
PHASE_TEST = "test"


def std_cmake_args(prefix: Path) -> list[str]:
    return [
        f"-DCMAKE_INSTALL_PREFIX={prefix}",
        "-DCMAKE_BUILD_TYPE=Release",
        "-DCMAKE_FIND_FRAMEWORK=LAST",
        "-DCMAKE_VERBOSE_MAKEFILE=ON",
        "-Wno-dev",
    ]


@define(frozen=True, slots=True)
class InstallOptions:
    force: bool = False
    jobs: int = 1
    lock_timeout: float = 300.0
    clean_on_cancel: bool = False
    keep_build_dir: bool = False


@define(slots=True)
class FormulaOutcome:
    name: str
    state: FormulaState = FormulaState.PENDING
    receipt: Receipt | None = None
    error: InstallError | None = None
    reused: bool = False

    def advance(self, state: FormulaState) -> None:
        if state not in STATE_TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"Illegal transition for '{self.name}': {self.state} -> {state}")
        logger.debug("Formula state change", formula=self.name, old=str(self.state), new=str(state))
        self.state = state

    def reuse(self, receipt: Receipt) -> None:
        self.receipt = receipt
        self.reused = True
        self.state = receipt.state

    def fail(self, error: InstallError) -> None:
        self.error = error
        self.state = FormulaState.FAILED


@define(slots=True)
class InstallReport:
    plan: ResolvedPlan
    outcomes: dict[str, FormulaOutcome] = field(factory=dict)

    @property
    def succeeded(self) -> list[FormulaOutcome]:
        return [o for o in self.outcomes.values() if o.state.is_success]

    @property
    def failed(self) -> list[FormulaOutcome]:
        return [o for o in self.outcomes.values() if o.state == FormulaState.FAILED]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class Orchestrator:
    def __init__(
        self,
        config: EngineConfig,
        store: ReceiptStore,
        executor: Executor | None = None,
        fetcher: SourceFetcher | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.executor = executor or Executor(
            env_allowlist=config.env_allowlist,
            inject_env={"FORMULARY_PREFIX": str(config.prefix)},
            output_limit=config.output_limit,
            grace_period=config.grace_period,
        )
        self.fetcher = fetcher or DefaultFetcher(self.executor)

    def default_options(self, **overrides) -> InstallOptions:
        options = InstallOptions(
            jobs=self.config.jobs,
            lock_timeout=self.config.lock_timeout,
            keep_build_dir=self.config.keep_build_dir,
        )
        return evolve(options, **{k: v for k, v in overrides.items() if v is not None})

    def plan(self, names: Iterable[str], known: Mapping[str, Formula]) -> ResolvedPlan:
        return resolve(names, known, self.store)

    def install(
        self,
        name: str,
        known: Mapping[str, Formula],
        options: InstallOptions | None = None,
    ) -> Receipt:
        """Installs `name` and its dependencies, returning the receipt for `name`."""
        report = self.install_many([name], known, options)
        outcome = report.outcomes[name]
        if outcome.error is not None:
            raise outcome.error
        if outcome.receipt is None:
            raise FormularyError(f"Install of '{name}' finished without a receipt.")
        return outcome.receipt

    def install_many(
        self,
        names: Iterable[str],
        known: Mapping[str, Formula],
        options: InstallOptions | None = None,
        cancel: CancelToken | None = None,
    ) -> InstallReport:
        """Installs a whole plan; one formula failing does not stop its siblings.

        Resolution errors propagate before anything is fetched. An entry
        starts only after every one of its dependencies finished with a
        receipt written and its lock released.
        """
        options = options or self.default_options()
        cancel = cancel or CancelToken()
        plan = self.plan(names, known)
        report = InstallReport(plan=plan)
        for entry in plan:
            report.outcomes[entry.name] = FormulaOutcome(name=entry.name)

        logger.info(f"Installing plan: {', '.join(plan.names)}", jobs=options.jobs)
        pending = list(plan.entries)
        running: dict[Future, str] = {}

        with ThreadPoolExecutor(
            max_workers=max(1, options.jobs), thread_name_prefix="formulary"
        ) as pool:
            while pending or running:
                for entry in list(pending):
                    outcome = report.outcomes[entry.name]
                    deps = [report.outcomes[d] for d in entry.dependencies]
                    failed_dep = next((d for d in deps if d.state == FormulaState.FAILED), None)
                    if failed_dep is not None:
                        pending.remove(entry)
                        outcome.fail(
                            DependencyFailedError(
                                f"Dependency '{failed_dep.name}' failed.", formula=entry.name
                            )
                        )
                        continue
                    if cancel.cancelled:
                        pending.remove(entry)
                        outcome.fail(CancelledError("Cancelled before start.", formula=entry.name))
                        continue
                    if all(d.state.is_success for d in deps):
                        pending.remove(entry)
                        future = pool.submit(
                            self._install_entry, known[entry.name], options, cancel, outcome
                        )
                        running[future] = entry.name

                if not running:
                    break
                try:
                    done, _ = wait(running, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning("Interrupted; cancelling at the next step boundary")
                    cancel.cancel()
                    continue
                for future in done:
                    running.pop(future)
                    future.result()

        for outcome in report.failed:
            logger.error(f"Formula failed: {outcome.name}", error=str(outcome.error))
        logger.info(
            "Install finished",
            succeeded=len(report.succeeded),
            failed=len(report.failed),
        )
        return report

    def test(
        self,
        name: str,
        known: Mapping[str, Formula],
        options: InstallOptions | None = None,
    ) -> Receipt:
        """Re-runs only the test steps against an existing install."""
        options = options or self.default_options()
        formula = known.get(name)
        if formula is None:
            raise UnknownDependencyError(name)

        with self._locked(name, options.lock_timeout):
            receipt = self.store.get(name)
            if receipt is None:
                raise NotInstalledError(f"Formula '{name}' is not installed.")
            with self._scratch_dir(name) as scratch:
                test_log, verified = self._run_tests(formula, scratch, None)
            install_log = tuple(o for o in receipt.step_log if o.phase == PHASE_INSTALL)
            updated = evolve(
                receipt,
                state=FormulaState.INSTALLED if verified else FormulaState.INSTALLED_UNVERIFIED,
                step_log=install_log + test_log,
            )
            self.store.put(updated)
        logger.info(f"Tested {name}", state=str(updated.state))
        return updated

    def uninstall(self, name: str, options: InstallOptions | None = None) -> bool:
        options = options or self.default_options()
        with self._locked(name, options.lock_timeout):
            removed = self.store.remove(name)
        if removed:
            logger.info(f"Uninstalled {name}")
        else:
            logger.info(f"{name} was not installed")
        return removed

    def _install_entry(
        self,
        formula: Formula,
        options: InstallOptions,
        cancel: CancelToken,
        outcome: FormulaOutcome,
    ) -> None:
        try:
            outcome.receipt = self._install_one(formula, options, cancel, outcome)
        except InstallError as e:
            if e.formula is None:
                e.formula = formula.name
            outcome.fail(e)
        except Exception as e:
            # One formula's failure never aborts the plan.
            logger.error("Unexpected error while installing", formula=formula.name, error=repr(e))
            error = InstallError(f"Unexpected error: {e!r}", formula=formula.name)
            error.__cause__ = e
            outcome.fail(error)

    def _install_one(
        self,
        formula: Formula,
        options: InstallOptions,
        cancel: CancelToken,
        outcome: FormulaOutcome,
    ) -> Receipt:
        with self._locked(formula.name, options.lock_timeout):
            existing = self._existing_receipt(formula.name)
            if existing is not None and not options.force:
                if (
                    existing.source_url == formula.source.url
                    and self.fetcher.resolve_ref(formula.source) == existing.resolved_source_ref
                ):
                    logger.info(f"{formula.name} is already installed", ref=existing.resolved_source_ref)
                    outcome.reuse(existing)
                    return existing

            cancel.raise_if_cancelled(formula.name, "fetch")
            outcome.advance(FormulaState.FETCHING)
            build_dir = self._fresh_build_dir(formula.name)
            try:
                resolved_ref = self.fetcher.fetch(formula.source, build_dir, cancel)
                logger.info(f"Fetched {formula.name}", ref=resolved_ref, build_dir=str(build_dir))

                missing = self.executor.missing_tools(formula.required_tools)
                if missing:
                    raise MissingToolError(
                        f"Required tool(s) not found on PATH: {', '.join(missing)}",
                        formula=formula.name,
                        step="required_tools",
                    )

                outcome.advance(FormulaState.BUILDING)
                install_log: list[StepOutcome] = []
                self._run_phase(
                    formula, PHASE_INSTALL, formula.install_steps, build_dir, cancel, install_log
                )

                outcome.advance(FormulaState.TESTING)
                with self._scratch_dir(formula.name) as scratch:
                    test_log, verified = self._run_tests(formula, scratch, cancel)
            except CancelledError:
                if options.clean_on_cancel:
                    shutil.rmtree(build_dir, ignore_errors=True)
                else:
                    logger.warning("Build directory left for inspection", path=str(build_dir))
                raise
            except InstallError:
                logger.warning("Build directory left for inspection", path=str(build_dir))
                raise

            state = FormulaState.INSTALLED if verified else FormulaState.INSTALLED_UNVERIFIED
            receipt = Receipt(
                name=formula.name,
                version=formula.display_version(resolved_ref),
                source_url=formula.source.url,
                resolved_source_ref=resolved_ref,
                install_prefix=str(self.config.prefix),
                state=state,
                installed_at=datetime.now(UTC),
                step_log=(*install_log, *test_log),
            )
            self.store.put(receipt)
            outcome.advance(state)

        if not options.keep_build_dir:
            shutil.rmtree(build_dir, ignore_errors=True)
        if state == FormulaState.INSTALLED_UNVERIFIED:
            logger.warning(f"{formula.name} installed but its tests failed")
        else:
            logger.info(f"{formula.name} installed", version=receipt.version)
        return receipt

    def _run_phase(
        self,
        formula: Formula,
        phase: str,
        steps: tuple[CommandSpec, ...],
        build_dir: Path,
        cancel: CancelToken | None,
        log: list[StepOutcome],
    ) -> None:
        """Runs `steps` in order, appending to `log`; the first failure propagates."""
        variables, expansions = self._variables(formula, build_dir)
        for index, template in enumerate(steps):
            spec = template.render(variables, expansions)
            label = f"{phase}[{index}] {spec.program}"
            if cancel is not None:
                cancel.raise_if_cancelled(formula.name, label)
            try:
                result = self.executor.run(
                    spec,
                    env={"FORMULARY_BUILD_DIR": str(build_dir)},
                    cancel=cancel,
                    label=label,
                )
            except InstallError as e:
                e.formula = formula.name
                e.step = label
                raise
            log.append(
                StepOutcome(
                    phase=phase,
                    index=index,
                    command=spec.display(),
                    exit_code=result.exit_code,
                    duration=round(result.duration, 3),
                    truncated=result.truncated,
                    output_tail=result.tail(),
                )
            )

    def _run_tests(
        self, formula: Formula, scratch: Path, cancel: CancelToken | None
    ) -> tuple[tuple[StepOutcome, ...], bool]:
        """Runs the test steps; a failure stops the phase and marks it unverified."""
        log: list[StepOutcome] = []
        try:
            self._run_phase(formula, PHASE_TEST, formula.test_steps, scratch, cancel, log)
        except ExecutionError as e:
            logger.warning(f"Test step failed for {formula.name}", step=e.step, exit_code=e.exit_code)
            result = e.result
            log.append(
                StepOutcome(
                    phase=PHASE_TEST,
                    index=len(log),
                    command=" ".join(e.command),
                    exit_code=e.exit_code,
                    duration=round(result.duration, 3) if result is not None else 0.0,
                    truncated=result.truncated if result is not None else False,
                    output_tail=e.output_tail,
                )
            )
            return tuple(log), False
        return tuple(log), True

    def _variables(
        self, formula: Formula, build_dir: Path
    ) -> tuple[dict[str, str], dict[str, list[str]]]:
        prefix = self.config.prefix
        variables = {
            "prefix": str(prefix),
            "build_dir": str(build_dir),
            "bin": str(prefix / "bin"),
            "lib": str(prefix / "lib"),
            "include": str(prefix / "include"),
            "name": formula.name,
        }
        return variables, {"std_cmake_args": std_cmake_args(prefix)}

    def _existing_receipt(self, name: str) -> Receipt | None:
        try:
            return self.store.get(name)
        except ReceiptError as e:
            logger.warning("Ignoring unreadable receipt", formula=name, error=str(e))
            return None

    def _fresh_build_dir(self, name: str) -> Path:
        self.config.builds_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{name}-", dir=self.config.builds_dir))

    @contextlib.contextmanager
    def _scratch_dir(self, name: str) -> Iterator[Path]:
        self.config.builds_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix=f"{name}-test-", dir=self.config.builds_dir
        ) as scratch:
            yield Path(scratch)

    @contextlib.contextmanager
    def _locked(self, name: str, timeout: float) -> Iterator[None]:
        if not FORMULA_NAME_PATTERN.match(name):
            raise FormularyError(f"Invalid formula name '{name}'.")
        self.config.locks_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.config.locks_dir / f"{name}.lock"), timeout=timeout)
        logger.debug("Acquiring formula lock", formula=name, timeout=timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise LockTimeoutError(
                f"Timed out after {timeout}s waiting for the lock on '{name}'.",
                formula=name,
            ) from e
        try:
            yield
        finally:
            lock.release()
