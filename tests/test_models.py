"""Tests for the formula data model."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from formulary.engine.orchestrator import std_cmake_args
from formulary.models import (
    CommandSpec,
    FormulaState,
    Receipt,
    Source,
    StepOutcome,
)

VARIABLES = {
    "prefix": "/opt/pep",
    "build_dir": "/tmp/build-1",
    "bin": "/opt/pep/bin",
    "name": "libpep",
}


def test_render_substitutes_placeholders() -> None:
    spec = CommandSpec(program="${bin}/libpepcli", arguments=("--out", "${prefix}/share/${name}"))
    rendered = spec.render(VARIABLES)

    assert rendered.program == "/opt/pep/bin/libpepcli"
    assert rendered.arguments == ("--out", "/opt/pep/share/libpep")
    assert rendered.working_directory == "/tmp/build-1"


def test_render_expands_list_placeholders() -> None:
    spec = CommandSpec(
        program="cmake",
        arguments=("-S", ".", "-B", "build", "${std_cmake_args}"),
    )
    rendered = spec.render(VARIABLES, {"std_cmake_args": std_cmake_args(Path("/opt/pep"))})

    assert rendered.arguments[:4] == ("-S", ".", "-B", "build")
    assert "-DCMAKE_INSTALL_PREFIX=/opt/pep" in rendered.arguments
    assert "-DCMAKE_BUILD_TYPE=Release" in rendered.arguments
    assert "${std_cmake_args}" not in rendered.arguments


def test_render_leaves_unknown_placeholders() -> None:
    spec = CommandSpec(program="echo", arguments=("${unknown}", "$HOME"))
    assert spec.render(VARIABLES).arguments == ("${unknown}", "$HOME")


def test_render_resolves_relative_working_directory() -> None:
    relative = CommandSpec(program="make", working_directory="build")
    absolute = CommandSpec(program="make", working_directory="${prefix}/src")

    assert relative.render(VARIABLES).working_directory == str(Path("/tmp/build-1") / "build")
    assert absolute.render(VARIABLES).working_directory == "/opt/pep/src"


def test_command_spec_is_immutable() -> None:
    spec = CommandSpec(program="make", arguments=["all"])
    assert spec.arguments == ("all",)
    with pytest.raises(AttributeError):
        spec.program = "gmake"  # type: ignore[misc]


def test_receipt_round_trip() -> None:
    receipt = Receipt(
        name="libpep",
        version="HEAD-0123456",
        source_url="https://example.invalid/libpep.git",
        resolved_source_ref="0123456789abcdef",
        install_prefix="/opt/pep",
        state=FormulaState.INSTALLED_UNVERIFIED,
        installed_at=datetime(2026, 10, 19, 12, 0, tzinfo=UTC),
        step_log=[
            StepOutcome(phase="install", index=0, command="cmake", exit_code=0, duration=1.5),
            StepOutcome(phase="test", index=0, command="libpepcli", exit_code=1, duration=0.1),
        ],
    )
    assert Receipt.from_dict(receipt.to_dict()) == receipt
    assert not receipt.verified


def test_state_properties() -> None:
    assert FormulaState.INSTALLED.is_terminal
    assert FormulaState.FAILED.is_terminal
    assert not FormulaState.BUILDING.is_terminal
    assert FormulaState.INSTALLED_UNVERIFIED.is_success
    assert not FormulaState.FAILED.is_success


def test_source_is_archive() -> None:
    assert Source(type="archive", url="u", checksum="sha256:" + "0" * 64).is_archive
    assert not Source(type="git-head", url="u", ref="main").is_archive
