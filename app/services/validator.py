# app/services/validator.py
from __future__ import annotations
from typing import Any, Dict, List
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, ValidationError

class JsonValidatorService:
    """
    JSON Schema checks for upstream tool catalogs:
    - schema_problem(): is a declared input schema a usable object schema?
    - validate(): do forwarded arguments satisfy that schema?
    """

    def schema_problem(self, schema: Any) -> str | None:
        """Return a reason string when `schema` is not a well-formed object schema, else None."""
        if not isinstance(schema, dict):
            return "input schema is not a JSON object"
        if schema.get("type") != "object":
            return f"input schema type must be 'object', got {schema.get('type')!r}"
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            return f"input schema is not valid JSON Schema: {e.message}"
        return None

    def validate(self, instance: Dict[str, Any], schema: Dict[str, Any]) -> Dict[str, Any]:
        validator = Draft202012Validator(schema)

        errors: List[ValidationError] = sorted(validator.iter_errors(instance), key=lambda e: [str(p) for p in e.path])
        if not errors:
            return {"valid": True, "errors": []}

        def to_path(err: ValidationError) -> str:
            # Convert deque/path into JSON Pointer-like string
            segments = [str(p) for p in err.path]
            return "/" + "/".join(segments) if segments else "/"

        return {
            "valid": False,
            "errors": [
                {"path": to_path(e), "keyword": e.validator, "message": e.message}
                for e in errors
            ],
        }
