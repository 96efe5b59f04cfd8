"""Parsing of declarative formula files into `Formula` objects."""

from collections.abc import Mapping
from pathlib import Path
import tomllib
from typing import Any

from pyvider.telemetry import logger

from .checksums import normalize_checksum
from .exceptions import IntegrityConfigError, ParseError
from .models import (
    FORMULA_NAME_PATTERN,
    SOURCE_ARCHIVE,
    SOURCE_GIT_HEAD,
    SOURCE_TYPES,
    CommandSpec,
    Formula,
    Source,
)

REQUIRED_FIELDS = (
    "name",
    "description",
    "homepage",
    "license",
    "source",
    "build_dependencies",
    "install_steps",
    "test_steps",
)

DEFAULT_BRANCH = "main"


def parse(raw: Mapping[str, Any], origin: str | None = None) -> Formula:
    """Builds a Formula from decoded declaration data.

    Unknown fields are ignored. Dependencies are not checked against any
    formula set here; that happens at resolution time.
    """
    if not isinstance(raw, Mapping):
        raise ParseError("Formula declaration must be a table.", origin=origin)

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ParseError("Missing or empty 'name'.", origin=origin)
    if not FORMULA_NAME_PATTERN.match(name):
        raise ParseError(f"Invalid formula name '{name}'.", formula=name, origin=origin)

    missing = [key for key in REQUIRED_FIELDS if key not in raw]
    if missing:
        raise ParseError(
            f"Missing required field(s): {', '.join(missing)}",
            formula=name,
            origin=origin,
        )

    for key in ("description", "homepage", "license"):
        if not isinstance(raw[key], str):
            raise ParseError(f"'{key}' must be a string.", formula=name, origin=origin)

    dependencies = _string_list(raw["build_dependencies"], "build_dependencies", name, origin)
    if name in dependencies:
        raise ParseError(
            "A formula cannot depend on itself.", formula=name, origin=origin
        )

    version = raw.get("version")
    if version is not None and not isinstance(version, str):
        raise ParseError("'version' must be a string.", formula=name, origin=origin)

    return Formula(
        name=name,
        description=raw["description"],
        homepage=raw["homepage"],
        license=raw["license"],
        version=version,
        source=_parse_source(raw["source"], name, origin),
        build_dependencies=tuple(dict.fromkeys(dependencies)),
        required_tools=_string_list(raw.get("required_tools", []), "required_tools", name, origin),
        install_steps=_parse_steps(raw["install_steps"], "install_steps", name, origin),
        test_steps=_parse_steps(raw["test_steps"], "test_steps", name, origin),
    )


def parse_file(path: Path) -> Formula:
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ParseError(f"Invalid TOML: {e}", origin=str(path)) from e
    except OSError as e:
        raise ParseError(f"Cannot read formula: {e}", origin=str(path)) from e
    return parse(data, origin=str(path))


def load_formulae(directory: Path) -> tuple[dict[str, Formula], list[ParseError]]:
    """Loads every `*.toml` formula in `directory`.

    A broken file only costs its own formula; its error is returned
    alongside the formulas that did load.
    """
    formulae: dict[str, Formula] = {}
    errors: list[ParseError] = []
    if not directory.is_dir():
        logger.warning("Formula directory not found", directory=str(directory))
        return formulae, errors

    for path in sorted(directory.glob("*.toml")):
        try:
            formula = parse_file(path)
        except ParseError as e:
            logger.warning("Skipping unparsable formula", path=str(path), error=str(e))
            errors.append(e)
            continue
        if formula.name in formulae:
            error = ParseError(
                f"Duplicate formula name '{formula.name}'.",
                formula=formula.name,
                origin=str(path),
            )
            logger.warning("Skipping duplicate formula", path=str(path))
            errors.append(error)
            continue
        formulae[formula.name] = formula

    logger.debug(f"Loaded {len(formulae)} formula(e) from {directory}")
    return formulae, errors


def _parse_source(raw: Any, name: str, origin: str | None) -> Source:
    if not isinstance(raw, Mapping):
        raise ParseError("'source' must be a table.", formula=name, origin=origin)

    source_type = raw.get("type")
    if source_type not in SOURCE_TYPES:
        raise ParseError(
            f"'source.type' must be one of {', '.join(SOURCE_TYPES)}; got {source_type!r}.",
            formula=name,
            origin=origin,
        )
    url = raw.get("url")
    if not isinstance(url, str) or not url:
        raise ParseError("'source.url' is required.", formula=name, origin=origin)

    if source_type == SOURCE_GIT_HEAD:
        if "checksum" in raw:
            raise ParseError(
                "A git-head source cannot declare a checksum.",
                formula=name,
                origin=origin,
            )
        ref = raw.get("ref", raw.get("branch", DEFAULT_BRANCH))
        if not isinstance(ref, str) or not ref:
            raise ParseError("'source.ref' must be a branch name.", formula=name, origin=origin)
        return Source(type=SOURCE_GIT_HEAD, url=url, ref=ref)

    checksum = raw.get("checksum")
    if not checksum:
        raise IntegrityConfigError(
            "Archive sources require a checksum; refusing an unchecked download.",
            formula=name,
            origin=origin,
        )
    if not isinstance(checksum, str):
        raise IntegrityConfigError("'source.checksum' must be a string.", formula=name, origin=origin)
    try:
        checksum = normalize_checksum(checksum)
    except IntegrityConfigError as e:
        raise IntegrityConfigError(str(e), formula=name, origin=origin) from e
    return Source(type=SOURCE_ARCHIVE, url=url, checksum=checksum)


def _parse_steps(
    raw: Any, key: str, name: str, origin: str | None
) -> tuple[CommandSpec, ...]:
    if not isinstance(raw, list):
        raise ParseError(f"'{key}' must be a list.", formula=name, origin=origin)

    steps = []
    for index, item in enumerate(raw):
        if isinstance(item, list):
            if not item or not all(isinstance(part, str) for part in item):
                raise ParseError(
                    f"{key}[{index}] must be a non-empty list of strings.",
                    formula=name,
                    origin=origin,
                )
            steps.append(CommandSpec(program=item[0], arguments=item[1:]))
        elif isinstance(item, Mapping):
            program = item.get("program")
            if not isinstance(program, str) or not program:
                raise ParseError(
                    f"{key}[{index}] is missing 'program'.", formula=name, origin=origin
                )
            arguments = _string_list(item.get("arguments", []), f"{key}[{index}].arguments", name, origin)
            workdir = item.get("working_directory")
            if workdir is not None and not isinstance(workdir, str):
                raise ParseError(
                    f"{key}[{index}].working_directory must be a string.",
                    formula=name,
                    origin=origin,
                )
            steps.append(
                CommandSpec(program=program, arguments=arguments, working_directory=workdir)
            )
        else:
            raise ParseError(
                f"{key}[{index}] must be a table or a list.", formula=name, origin=origin
            )
    return tuple(steps)


def _string_list(raw: Any, key: str, name: str, origin: str | None) -> tuple[str, ...]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ParseError(f"'{key}' must be a list of strings.", formula=name, origin=origin)
    return tuple(raw)
