from __future__ import annotations

import json
from pathlib import Path

import yaml

from afu9.core.errors import ConfigurationError
from afu9.lawbook.schema import Lawbook, parse_lawbook


def load_lawbook_file(path: str | Path) -> Lawbook:
    """Load a lawbook from a YAML or JSON file."""
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot read lawbook file: {exc}", details={"path": str(file_path)}
        ) from exc

    try:
        if file_path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(
            f"Cannot parse lawbook file: {exc}", details={"path": str(file_path)}
        ) from exc

    return parse_lawbook(data)
