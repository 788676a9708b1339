from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import yaml

from process_scheduler.core.errors import TemplateLoadError


# suffix -> (parser, error code for unparseable content)
_PARSERS: dict[str, tuple[Callable[[str], Any], str]] = {
    ".yaml": (yaml.safe_load, "E_YAML_PARSE"),
    ".yml": (yaml.safe_load, "E_YAML_PARSE"),
    ".json": (json.loads, "E_JSON_PARSE"),
}


def read_document(path: str | Path) -> dict[str, Any]:
    """Read a YAML/JSON mapping; raises TemplateLoadError with a stable code.

    Shared by template, case and any other document the CLI reads.
    """
    p = Path(path)
    if not p.exists():
        raise TemplateLoadError(code="E_FILE_NOT_FOUND", message="file does not exist", file=str(p))

    parser = _PARSERS.get(p.suffix.lower())
    if parser is None:
        raise TemplateLoadError(
            code="E_UNSUPPORTED_FORMAT",
            message=f"supported formats are {', '.join(sorted(_PARSERS))}",
            file=str(p),
        )
    parse, parse_code = parser

    try:
        data = parse(p.read_text(encoding="utf-8"))
    except (yaml.YAMLError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise TemplateLoadError(code=parse_code, message=str(e), file=str(p)) from e

    if not isinstance(data, dict):
        raise TemplateLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="top-level document must be a mapping/object",
            file=str(p),
        )
    return data


def load_template(path: str | Path) -> dict[str, Any]:
    """Load a process template file.

    Returns a dict with keys: schema_version, template_id, name, steps and
    __file__. Does not coerce types; the validator owns shape checking.
    """
    data = read_document(path)
    doc = {key: data.get(key) for key in ("schema_version", "template_id", "name", "steps")}
    doc["__file__"] = str(Path(path))
    return doc
