"""Tests for parsing formula declarations."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from formulary.exceptions import IntegrityConfigError, ParseError
from formulary.formula import load_formulae, parse, parse_file
from formulary.models import SOURCE_ARCHIVE, SOURCE_GIT_HEAD, CommandSpec

FORMULAE_DIR = Path(__file__).parent.parent / "formulae"
CHECKSUM = "2777e5f5b4f19f93913e2e97187ccc71b61825a85efc48cb0358b2d2e3cca239"


@pytest.fixture
def raw() -> dict[str, Any]:
    return {
        "name": "libpep",
        "description": "Polymorphic Encryption and Pseudonimisation library",
        "homepage": "https://gitlab.science.ru.nl/ilab/libpep",
        "license": "BSD-2-Clause",
        "source": {"type": "git-head", "url": "https://example.invalid/libpep.git", "ref": "main"},
        "build_dependencies": ["cmake-formula"],
        "install_steps": [
            {"program": "cmake", "arguments": ["-S", ".", "-B", "build"]},
            ["cmake", "--build", "build", "--target", "install"],
        ],
        "test_steps": [{"program": "${bin}/libpepcli"}],
    }


def test_parse_git_head_formula(raw: dict[str, Any]) -> None:
    formula = parse(raw)

    assert formula.name == "libpep"
    assert formula.source.type == SOURCE_GIT_HEAD
    assert formula.source.ref == "main"
    assert formula.build_dependencies == ("cmake-formula",)
    assert formula.install_steps == (
        CommandSpec(program="cmake", arguments=("-S", ".", "-B", "build")),
        CommandSpec(program="cmake", arguments=("--build", "build", "--target", "install")),
    )
    assert formula.test_steps[0].program == "${bin}/libpepcli"
    assert formula.test_steps[0].arguments == ()


def test_parse_ignores_unknown_fields(raw: dict[str, Any]) -> None:
    raw["bottle"] = {"sha256": "whatever"}
    assert parse(raw).name == "libpep"


def test_parse_branch_defaults_to_main(raw: dict[str, Any]) -> None:
    del raw["source"]["ref"]
    assert parse(raw).source.ref == "main"


def test_parse_archive_requires_checksum(raw: dict[str, Any]) -> None:
    raw["source"] = {"type": "archive", "url": "https://example.invalid/libpep-0.1.tar.gz"}
    with pytest.raises(IntegrityConfigError, match="require a checksum"):
        parse(raw)


def test_parse_archive_rejects_malformed_checksum(raw: dict[str, Any]) -> None:
    raw["source"] = {
        "type": "archive",
        "url": "https://example.invalid/libpep-0.1.tar.gz",
        "checksum": "not-a-digest",
    }
    with pytest.raises(IntegrityConfigError):
        parse(raw)


def test_parse_archive_normalizes_checksum(raw: dict[str, Any]) -> None:
    raw["source"] = {
        "type": "archive",
        "url": "https://example.invalid/libpep-0.1.tar.gz",
        "checksum": CHECKSUM.upper(),
    }
    formula = parse(raw)
    assert formula.source.type == SOURCE_ARCHIVE
    assert formula.source.checksum == f"sha256:{CHECKSUM}"


def test_parse_missing_required_field(raw: dict[str, Any]) -> None:
    del raw["test_steps"]
    with pytest.raises(ParseError, match="test_steps"):
        parse(raw)


@pytest.mark.parametrize("name", ["", "../evil", "a/b", "-leading-dash", "libpep\n"])
def test_parse_rejects_unsafe_names(raw: dict[str, Any], name: str) -> None:
    raw["name"] = name
    with pytest.raises(ParseError):
        parse(raw)


def test_parse_rejects_self_dependency(raw: dict[str, Any]) -> None:
    raw["build_dependencies"] = ["libpep"]
    with pytest.raises(ParseError, match="depend on itself"):
        parse(raw)


def test_parse_rejects_unknown_source_type(raw: dict[str, Any]) -> None:
    raw["source"]["type"] = "svn"
    with pytest.raises(ParseError, match="source.type"):
        parse(raw)


def test_parse_rejects_bad_step(raw: dict[str, Any]) -> None:
    raw["install_steps"] = [{"arguments": ["--build"]}]
    with pytest.raises(ParseError, match="install_steps\\[0\\]"):
        parse(raw)


def test_parse_does_not_require_dependencies_to_exist(raw: dict[str, Any]) -> None:
    raw["build_dependencies"] = ["never-declared"]
    assert parse(raw).build_dependencies == ("never-declared",)


def test_bundled_formulae_parse() -> None:
    formula = parse_file(FORMULAE_DIR / "libpep.toml")
    assert formula.name == "libpep"
    assert formula.license == "BSD-2-Clause"
    assert formula.required_tools == ("cmake", "bsdmake")
    assert "${std_cmake_args}" in formula.install_steps[0].arguments

    formulae, errors = load_formulae(FORMULAE_DIR)
    assert errors == []
    assert {"libpep", "libpep-cpp"} <= set(formulae)


def test_parse_file_invalid_toml(tmp_path: Path) -> None:
    path = tmp_path / "broken.toml"
    path.write_text("name = ")
    with pytest.raises(ParseError, match="Invalid TOML"):
        parse_file(path)


def test_load_formulae_isolates_broken_files(
    tmp_path: Path, write_formula: Callable[..., Path]
) -> None:
    write_formula(tmp_path, "good")
    (tmp_path / "broken.toml").write_text('name = "broken"\n')
    duplicate = write_formula(tmp_path / "other", "good")
    duplicate.rename(tmp_path / "zz-duplicate.toml")

    formulae, errors = load_formulae(tmp_path)

    assert list(formulae) == ["good"]
    assert len(errors) == 2
    assert {e.formula for e in errors} == {"broken", "good"}


def test_load_formulae_missing_directory(tmp_path: Path) -> None:
    formulae, errors = load_formulae(tmp_path / "nope")
    assert formulae == {}
    assert errors == []
