from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

M = TypeVar("M", bound=BaseModel)


class FieldError(BaseModel):
    field: str
    message: str
    type: str


class ValidationResult(BaseModel, Generic[M]):
    ok: bool
    value: Optional[M] = None
    errors: List[FieldError] = []


def _field_path(loc: Iterable[Any]) -> str:
    # FastAPI prefixes locations with "body"/"query"/"path"
    parts = [str(part) for part in loc]
    if parts and parts[0] in ("body", "query", "path", "header"):
        parts = parts[1:]
    return ".".join(parts) or "body"


def field_errors_from_pydantic(errors: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {
            "field": _field_path(error.get("loc", ())),
            "message": error.get("msg", "Invalid value"),
            "type": error.get("type", "value_error"),
        }
        for error in errors
    ]


def validate_body(model: Type[M], raw: Any) -> ValidationResult[M]:
    """Validate an already-parsed request body without raising."""
    if not isinstance(raw, dict):
        return ValidationResult[model](
            ok=False,
            errors=[
                FieldError(
                    field="body",
                    message="Request body must be a JSON object",
                    type="model_type",
                )
            ],
        )

    try:
        value = model.model_validate(raw)
    except ValidationError as e:
        return ValidationResult[model](
            ok=False,
            errors=[FieldError(**item) for item in field_errors_from_pydantic(e.errors())],
        )
    return ValidationResult[model](ok=True, value=value)
