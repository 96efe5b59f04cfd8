"""Logic for scaffolding new formula declarations."""

import json
from pathlib import Path

import jinja2

from ..checksums import normalize_checksum
from ..models import FORMULA_NAME_PATTERN, SOURCE_ARCHIVE, SOURCE_GIT_HEAD

_TEMPLATE_DIR = Path(__file__).parent / "templates"


def _toml_string(value: str) -> str:
    # JSON string literals are valid TOML basic strings.
    return json.dumps(value)


def _get_template_env() -> jinja2.Environment:
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(_TEMPLATE_DIR),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["toml"] = _toml_string
    return env


def scaffold_formula(
    name: str,
    formula_dir: Path,
    url: str,
    checksum: str | None = None,
    branch: str = "main",
    description: str = "",
    homepage: str = "",
    license: str = "",
    version: str | None = None,
) -> Path:
    """Writes `<formula_dir>/<name>.toml` with cmake-style default steps.

    A checksum selects an archive source; otherwise a git-head source on
    `branch` is generated.
    """
    if not FORMULA_NAME_PATTERN.match(name):
        raise ValueError(f"Invalid formula name: {name!r}")

    if checksum:
        checksum = normalize_checksum(checksum)

    output_file = formula_dir / f"{name}.toml"
    if output_file.exists():
        raise FileExistsError(f"Formula already exists: {output_file}")

    template = _get_template_env().get_template("formula.toml.j2")
    rendered = template.render(
        name=name,
        description=description or f"{name} library",
        homepage=homepage or url,
        license=license or "NOASSERTION",
        version=version,
        source_type=SOURCE_ARCHIVE if checksum else SOURCE_GIT_HEAD,
        url=url,
        checksum=checksum,
        branch=branch,
    )

    formula_dir.mkdir(parents=True, exist_ok=True)
    output_file.write_text(rendered)
    return output_file
