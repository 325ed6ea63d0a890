from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Tuple

import jsonschema

REPO_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_DIR = REPO_ROOT / "config" / "schemas"


class MalformedRow(ValueError):
    """A store row or push payload that does not match its schema."""


@lru_cache(maxsize=None)
def _load_schema(kind: str) -> Dict[str, Any]:
    schema_path = SCHEMA_DIR / f"{kind}.schema.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_with_schema(data: Dict[str, Any], kind: str) -> Tuple[bool, str]:
    try:
        schema = _load_schema(kind)
    except Exception as e:
        return False, str(e)

    try:
        jsonschema.validate(instance=data, schema=schema)
        return True, "Valid"
    except jsonschema.exceptions.ValidationError as e:
        return False, e.message


def require_valid(data: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise MalformedRow(f"{kind}: expected an object, got {type(data).__name__}")
    ok, msg = validate_with_schema(data, kind)
    if not ok:
        raise MalformedRow(f"{kind}: {msg}")
    return data
