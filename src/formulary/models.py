from collections.abc import Mapping
from datetime import datetime
import enum
from pathlib import Path
import re
from string import Template
from typing import Any, Self

from attrs import define, field

SOURCE_GIT_HEAD = "git-head"
SOURCE_ARCHIVE = "archive"
SOURCE_TYPES = (SOURCE_GIT_HEAD, SOURCE_ARCHIVE)

FORMULA_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*\Z")


class FormulaState(enum.StrEnum):
    PENDING = "pending"
    FETCHING = "fetching"
    BUILDING = "building"
    TESTING = "testing"
    INSTALLED = "installed"
    INSTALLED_UNVERIFIED = "installed_unverified"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_success(self) -> bool:
        return self in (FormulaState.INSTALLED, FormulaState.INSTALLED_UNVERIFIED)


TERMINAL_STATES = frozenset(
    {
        FormulaState.INSTALLED,
        FormulaState.INSTALLED_UNVERIFIED,
        FormulaState.FAILED,
    }
)

STATE_TRANSITIONS: dict[FormulaState, frozenset[FormulaState]] = {
    FormulaState.PENDING: frozenset({FormulaState.FETCHING, FormulaState.FAILED}),
    FormulaState.FETCHING: frozenset({FormulaState.BUILDING, FormulaState.FAILED}),
    FormulaState.BUILDING: frozenset({FormulaState.TESTING, FormulaState.FAILED}),
    FormulaState.TESTING: frozenset(
        {
            FormulaState.INSTALLED,
            FormulaState.INSTALLED_UNVERIFIED,
            FormulaState.FAILED,
        }
    ),
}


@define(frozen=True, slots=True)
class Source:
    type: str
    url: str
    ref: str | None = None
    checksum: str | None = None

    @property
    def is_archive(self) -> bool:
        return self.type == SOURCE_ARCHIVE


@define(frozen=True, slots=True)
class CommandSpec:
    """A single external invocation, possibly still holding `${...}` placeholders."""

    program: str
    arguments: tuple[str, ...] = field(default=(), converter=tuple)
    working_directory: str | None = None

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.arguments]

    def display(self) -> str:
        return " ".join(self.argv)

    def render(
        self,
        variables: Mapping[str, str],
        expansions: Mapping[str, list[str]] | None = None,
    ) -> Self:
        """Substitutes placeholders and resolves the working directory.

        An argument that consists solely of a placeholder named in
        `expansions` is replaced by that list of arguments. Unknown
        placeholders are left as they are.
        """
        expansions = expansions or {}
        arguments: list[str] = []
        for arg in self.arguments:
            token = _bare_placeholder(arg)
            if token is not None and token in expansions:
                arguments.extend(expansions[token])
            else:
                arguments.append(Template(arg).safe_substitute(variables))

        build_dir = variables.get("build_dir")
        workdir = self.working_directory
        if workdir is None:
            workdir = build_dir
        else:
            workdir = Template(workdir).safe_substitute(variables)
            if build_dir and not Path(workdir).is_absolute():
                workdir = str(Path(build_dir) / workdir)

        return type(self)(
            program=Template(self.program).safe_substitute(variables),
            arguments=tuple(arguments),
            working_directory=workdir,
        )


def _bare_placeholder(arg: str) -> str | None:
    if arg.startswith("${") and arg.endswith("}"):
        return arg[2:-1]
    return None


@define(frozen=True, slots=True)
class Formula:
    name: str
    description: str
    homepage: str
    license: str
    source: Source
    build_dependencies: tuple[str, ...] = field(default=(), converter=tuple)
    install_steps: tuple[CommandSpec, ...] = field(default=(), converter=tuple)
    test_steps: tuple[CommandSpec, ...] = field(default=(), converter=tuple)
    required_tools: tuple[str, ...] = field(default=(), converter=tuple)
    version: str | None = None

    def display_version(self, resolved_ref: str | None = None) -> str:
        if self.version:
            return self.version
        if resolved_ref:
            return f"HEAD-{resolved_ref[:7]}"
        return "HEAD"


@define(frozen=True, slots=True)
class StepOutcome:
    phase: str
    index: int
    command: str
    exit_code: int
    duration: float
    truncated: bool = False
    output_tail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def label(self) -> str:
        return f"{self.phase}[{self.index}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "index": self.index,
            "command": self.command,
            "exit_code": self.exit_code,
            "duration": self.duration,
            "truncated": self.truncated,
            "output_tail": self.output_tail,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            phase=data["phase"],
            index=int(data["index"]),
            command=data["command"],
            exit_code=int(data["exit_code"]),
            duration=float(data.get("duration", 0.0)),
            truncated=bool(data.get("truncated", False)),
            output_tail=data.get("output_tail", ""),
        )


@define(frozen=True, slots=True)
class Receipt:
    name: str
    version: str
    source_url: str
    resolved_source_ref: str
    install_prefix: str
    state: FormulaState
    installed_at: datetime
    step_log: tuple[StepOutcome, ...] = field(default=(), converter=tuple)

    @property
    def verified(self) -> bool:
        return self.state == FormulaState.INSTALLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "source_url": self.source_url,
            "resolved_source_ref": self.resolved_source_ref,
            "install_prefix": self.install_prefix,
            "state": self.state.value,
            "installed_at": self.installed_at.isoformat(),
            "step_log": [outcome.to_dict() for outcome in self.step_log],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            name=data["name"],
            version=data["version"],
            source_url=data["source_url"],
            resolved_source_ref=data["resolved_source_ref"],
            install_prefix=data["install_prefix"],
            state=FormulaState(data["state"]),
            installed_at=datetime.fromisoformat(data["installed_at"]),
            step_log=tuple(StepOutcome.from_dict(s) for s in data.get("step_log", [])),
        )


@define(frozen=True, slots=True)
class PlanEntry:
    name: str
    dependencies: tuple[str, ...] = ()
    already_satisfied: bool = False


@define(frozen=True, slots=True)
class ResolvedPlan:
    entries: tuple[PlanEntry, ...]

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, name: object) -> bool:
        return any(entry.name == name for entry in self.entries)
