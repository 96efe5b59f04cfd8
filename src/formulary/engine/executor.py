"""Runs external build commands in a restricted environment."""

from collections import deque
from collections.abc import Iterator, Mapping
import contextlib
import os
from pathlib import Path
import shutil
import signal
import subprocess
import threading
import time
from typing import IO

from attrs import define, field
from pyvider.telemetry import logger

from ..config import DEFAULT_ENV_ALLOWLIST
from ..exceptions import CancelledError, ExecutionError
from ..models import CommandSpec

DEFAULT_OUTPUT_LIMIT = 256 * 1024
DEFAULT_TAIL_LINES = 20


class CancelToken:
    """Shared flag that stops a plan at the next step boundary."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, formula: str | None = None, step: str | None = None) -> None:
        if self.cancelled:
            raise CancelledError("Cancelled by request.", formula=formula, step=step)


class OutputBuffer:
    """Line buffer capped at `limit` bytes; the oldest lines are dropped first."""

    def __init__(self, limit: int = DEFAULT_OUTPUT_LIMIT) -> None:
        self.limit = limit
        self.truncated = False
        self._lines: deque[str] = deque()
        self._size = 0
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        size = len(line.encode("utf-8", errors="replace"))
        with self._lock:
            if size > self.limit:
                # Cut on bytes; a split leading character is dropped.
                tail = line.encode("utf-8", errors="replace")[-self.limit :]
                line = tail.decode("utf-8", errors="ignore")
                size = len(line.encode("utf-8", errors="replace"))
                self.truncated = True
            self._lines.append(line)
            self._size += size
            while self._size > self.limit and len(self._lines) > 1:
                dropped = self._lines.popleft()
                self._size -= len(dropped.encode("utf-8", errors="replace"))
                self.truncated = True

    def getvalue(self) -> str:
        with self._lock:
            return "".join(self._lines)

    def tail(self, lines: int = DEFAULT_TAIL_LINES) -> str:
        with self._lock:
            return "".join(list(self._lines)[-lines:])


@define(frozen=True, slots=True)
class ExecutionResult:
    command: tuple[str, ...] = field(converter=tuple)
    exit_code: int
    output: str
    truncated: bool
    duration: float

    def tail(self, lines: int = DEFAULT_TAIL_LINES) -> str:
        return "".join(self.output.splitlines(keepends=True)[-lines:])


@contextlib.contextmanager
def working_directory(path: Path) -> Iterator[Path]:
    """Guarantees `path` exists for the duration of the block."""
    path.mkdir(parents=True, exist_ok=True)
    yield path


def _pump(stream: IO[str], buffer: OutputBuffer) -> None:
    with stream:
        for line in stream:
            buffer.append(line)


class Executor:
    """Runs one CommandSpec at a time on behalf of the orchestrator.

    Only allow-listed host variables reach the child, plus the variables
    injected by the engine. Standard output and error are merged into one
    bounded buffer. Nothing is retried here.
    """

    def __init__(
        self,
        env_allowlist: tuple[str, ...] = DEFAULT_ENV_ALLOWLIST,
        inject_env: Mapping[str, str] | None = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        grace_period: float = 10.0,
        poll_interval: float = 0.1,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.env_allowlist = tuple(env_allowlist)
        self.inject_env = dict(inject_env or {})
        self.output_limit = output_limit
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self._environ = os.environ if environ is None else environ

    def build_env(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        env = {
            key: self._environ[key] for key in self.env_allowlist if key in self._environ
        }
        env.update(self.inject_env)
        if extra:
            env.update(extra)
        return env

    def missing_tools(self, tools: tuple[str, ...] | list[str]) -> list[str]:
        search_path = self.build_env().get("PATH", "")
        return [tool for tool in tools if shutil.which(tool, path=search_path) is None]

    def run(
        self,
        spec: CommandSpec,
        *,
        env: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
        label: str | None = None,
    ) -> ExecutionResult:
        command = spec.argv
        cwd = Path(spec.working_directory) if spec.working_directory else Path.cwd()
        buffer = OutputBuffer(self.output_limit)

        with working_directory(cwd):
            logger.info(f"Running command: {spec.display()}", cwd=str(cwd), step=label)
            started = time.monotonic()
            try:
                process = subprocess.Popen(
                    command,
                    cwd=cwd,
                    env=self.build_env(env),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    start_new_session=True,
                )
            except FileNotFoundError as e:
                raise ExecutionError(
                    f"Program not found: {spec.program}",
                    exit_code=127,
                    command=command,
                    step=label,
                ) from e
            except PermissionError as e:
                raise ExecutionError(
                    f"Program is not executable: {spec.program}",
                    exit_code=126,
                    command=command,
                    step=label,
                ) from e

            reader = threading.Thread(target=_pump, args=(process.stdout, buffer), daemon=True)
            reader.start()
            cancelled = self._wait(process, cancel, reader)
            if cancel is not None and cancel.cancelled and process.returncode != 0:
                cancelled = True
            if cancelled:
                # Nothing a cancelled step started may keep running or hold the pipe.
                _signal_group(process, signal.SIGKILL)
            reader.join(timeout=self.grace_period if cancelled else None)

        result = ExecutionResult(
            command=command,
            exit_code=process.returncode,
            output=buffer.getvalue(),
            truncated=buffer.truncated,
            duration=time.monotonic() - started,
        )

        if cancelled:
            raise CancelledError(
                f"Cancelled while running: {spec.display()}",
                step=label,
                output_tail=result.tail(),
            )
        if result.exit_code != 0:
            logger.debug("Command failed", exit_code=result.exit_code, output=result.tail())
            raise ExecutionError(
                f"Command exited with status {result.exit_code}: {spec.display()}",
                exit_code=result.exit_code,
                command=command,
                output_tail=result.tail(),
                step=label,
                result=result,
            )
        if result.output:
            logger.debug("Command output", output=result.tail())
        return result

    def _wait(
        self,
        process: subprocess.Popen,
        cancel: CancelToken | None,
        reader: threading.Thread,
    ) -> bool:
        while True:
            try:
                process.wait(timeout=self.poll_interval)
                return False
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    self._terminate(process, reader)
                    return True

    def _terminate(self, process: subprocess.Popen, reader: threading.Thread) -> None:
        """Stops the step's whole process group: TERM, `grace_period`, then KILL."""
        logger.warning("Terminating command after cancellation", pid=process.pid)
        deadline = time.monotonic() + self.grace_period
        _signal_group(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            pass
        reader.join(timeout=max(0.0, deadline - time.monotonic()))
        if process.returncode is None or reader.is_alive():
            logger.warning("Killing command after grace period", pid=process.pid)
            _signal_group(process, signal.SIGKILL)
            process.wait()


def _signal_group(process: subprocess.Popen, sig: signal.Signals) -> None:
    # Each step leads its own session, so its pgid is its pid.
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
