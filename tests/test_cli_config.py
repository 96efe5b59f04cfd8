"""Tests for how the CLI layers formulary.toml, options and DESTDIR."""

from pathlib import Path
import sys

from click.testing import CliRunner
import pytest
from pytest import MonkeyPatch

from conftest import WRITE_FILE, FakeFetcher
from formulary.cli import cli
from formulary.receipts import FileReceiptStore


@pytest.fixture
def project(tmp_path: Path, monkeypatch: MonkeyPatch, write_formula) -> Path:
    monkeypatch.delenv("DESTDIR", raising=False)
    fetcher = FakeFetcher()
    monkeypatch.setattr(
        "formulary.engine.orchestrator.DefaultFetcher", lambda executor: fetcher
    )
    (tmp_path / "formulary.toml").write_text(
        '[formulary]\nformula_dir = "formulae"\nstate_dir = "state"\nprefix = "from-config"\n'
    )
    write_formula(
        tmp_path / "formulae",
        "libpep",
        install_steps=[[sys.executable, "-c", WRITE_FILE, "${prefix}/lib/libpep.a"]],
    )
    return tmp_path


def _install(project: Path, *options: str, env: dict[str, str] | None = None):
    config = str(project / "formulary.toml")
    return CliRunner().invoke(cli, ["--config", config, *options, "install", "libpep"], env=env)


def _installed_prefix(project: Path) -> str:
    return FileReceiptStore(project / "state" / "receipts").get("libpep").install_prefix


def test_prefix_from_config_file(project: Path) -> None:
    result = _install(project)
    assert result.exit_code == 0, result.output
    assert (project / "from-config" / "lib" / "libpep.a").is_file()
    assert _installed_prefix(project) == str(project / "from-config")


def test_destdir_overrides_config_prefix(project: Path, tmp_path: Path) -> None:
    destdir = tmp_path / "destdir"
    result = _install(project, env={"DESTDIR": str(destdir)})
    assert result.exit_code == 0, result.output
    assert (destdir / "lib" / "libpep.a").is_file()
    assert _installed_prefix(project) == str(destdir)


def test_prefix_option_overrides_destdir(project: Path, tmp_path: Path) -> None:
    option_prefix = tmp_path / "option"
    result = _install(
        project, "--prefix", str(option_prefix), env={"DESTDIR": str(tmp_path / "ignored")}
    )
    assert result.exit_code == 0, result.output
    assert (option_prefix / "lib" / "libpep.a").is_file()
    assert not (tmp_path / "ignored").exists()


def test_invalid_config_is_usage_error(tmp_path: Path) -> None:
    config = tmp_path / "formulary.toml"
    config.write_text("[formulary]\ncolour = 'blue'\n")
    result = CliRunner().invoke(cli, ["--config", str(config), "list"])
    assert result.exit_code == 2
    assert "Unknown configuration key" in result.output


def test_missing_config_is_usage_error(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.toml"), "list"])
    assert result.exit_code == 2
    assert "not found" in result.output
