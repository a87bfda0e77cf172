"""
Schema validation for steward.

Every record crosses a JSON Schema check before it is written and when a
config file is loaded. Failures surface as ValidationError with the schema
name and the JSON path of the offending value.
"""

import json
from pathlib import Path

import jsonschema

from steward.lib.errors import ValidationError

# Cache loaded schemas
_schema_cache: dict[str, dict] = {}


def _get_schemas_dir() -> Path:
    """Get path to the packaged schemas directory."""
    return Path(__file__).parent.parent / "schemas"


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def validate(data: dict, schema_name: str, identifier: str | None = None) -> None:
    """
    Validate data against named schema.

    Args:
        data: Dictionary to validate
        schema_name: Schema name (e.g., "topic", "request", "ledger_entry")
        identifier: Record id to report in the error (defaults to schema name)

    Raises:
        ValidationError: If validation fails
    """
    schema = _load_schema(schema_name)

    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise ValidationError(
            identifier or schema_name,
            f"{schema_name}: {e.message} at {path}",
            {"schema": schema_name, "path": path},
        ) from None


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """
    Validate data before writing to file. Ensures we never write invalid data.

    Raises:
        ValidationError: If data doesn't match schema
    """
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            str(filepath),
            f"Refusing to write invalid data: {e.message}",
            e.details,
        ) from None


def write_json_atomic(data: dict, schema_name: str, filepath: Path) -> None:
    """Validate, then write via temp file + rename so readers never see a partial record."""
    validate_before_write(data, schema_name, filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = filepath.with_name(f".{filepath.name}.tmp")
    tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
    tmp_path.replace(filepath)
