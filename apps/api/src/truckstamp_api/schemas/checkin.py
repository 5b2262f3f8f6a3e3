"""Request schemas for the check-in pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class CheckInRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vendorId: UUID
    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)
    # Client retry token; the server-side claim key does not depend on it.
    idempotencyKey: Optional[str] = Field(default=None, max_length=100)


class EligibilityQuery(BaseModel):
    vendorId: UUID
    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)


class FieldError(BaseModel):
    field: str
    message: str


@dataclass
class ValidationOutcome(Generic[ModelT]):
    success: bool
    data: ModelT | None = None
    errors: list[FieldError] = field(default_factory=list)


def validate(schema: type[ModelT], payload: Any) -> ValidationOutcome[ModelT]:
    """Validate ``payload`` without raising, flattening pydantic errors per field."""

    try:
        return ValidationOutcome(success=True, data=schema.model_validate(payload))
    except ValidationError as exc:
        errors = [
            FieldError(
                field=".".join(str(part) for part in error["loc"]) or "body",
                message=error["msg"],
            )
            for error in exc.errors()
        ]
        return ValidationOutcome(success=False, errors=errors)


__all__ = [
    "CheckInRequest",
    "EligibilityQuery",
    "FieldError",
    "ValidationOutcome",
    "validate",
]
