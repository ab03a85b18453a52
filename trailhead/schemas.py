"""
trailhead.schemas — Input Models
=================================

Pydantic models for the payloads administrators and members send to the
engine.  They coerce and bound individual fields; cross-field business
rules (contiguous stage order, known prerequisites) are checked by the
services, which raise :class:`trailhead.errors.ValidationError`.

Every input model forbids keys it does not declare, so a misspelt or
foreign field is reported instead of silently falling back to a default.

Use :func:`parse` to turn a raw dict into a model with domain errors::

    definition = parse(TemplateDefinition, request_json)
"""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from trailhead.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


class StrictInput(BaseModel):
    """Base for every inbound payload."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class AccessCriteriaIn(StrictInput):
    available_to_all: bool = True
    required_level: int | None = Field(default=None, ge=0)
    required_tags: list[str] = Field(default_factory=list)
    required_roles: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _legacy_open_flag(cls, data: Any) -> Any:
        # Criteria written by the older admin UI use ``is_available_for_all``.
        if isinstance(data, dict) and "is_available_for_all" in data:
            data = dict(data)
            legacy = data.pop("is_available_for_all")
            data.setdefault("available_to_all", legacy)
        return data


class StageDefinition(StrictInput):
    """One stage of a template or custom trail.

    ``order_index`` may be omitted, in which case stages are numbered in
    list order.  A stage with ``requires_response`` cannot be completed
    until the member has submitted a response for it.
    """

    name: str
    description: str | None = None
    guidance_text: str | None = None
    is_required: bool = True
    requires_response: bool = False
    target_value: int = Field(default=1, ge=1)
    order_index: int | None = Field(default=None, ge=0)


class TemplateDefinition(StrictInput):
    company_id: str
    name: str
    description: str | None = None
    life_area: str | None = None
    cover_url: str | None = None
    stages: list[StageDefinition] = Field(default_factory=list)
    access_criteria: AccessCriteriaIn = Field(default_factory=AccessCriteriaIn)
    prerequisite_ids: list[int] = Field(default_factory=list)
    completion_badge_id: int | None = None
    auto_complete: bool = True
    is_active: bool = True

    @field_validator("prerequisite_ids")
    @classmethod
    def _dedupe_prerequisites(cls, value: list[int]) -> list[int]:
        return list(dict.fromkeys(value))


class CustomTrailDefinition(StrictInput):
    """An ad-hoc trail a member (or admin) creates without a template."""

    name: str
    description: str | None = None
    life_area: str | None = None
    stages: list[StageDefinition] = Field(default_factory=list)
    completion_badge_id: int | None = None
    auto_complete: bool = True


class ReorderItem(StrictInput):
    id: int
    order_index: int = Field(ge=0)


class StageResponseIn(StrictInput):
    """What a member submits for a stage that asks for a response."""

    response_text: str | None = None
    response_data: dict[str, Any] = Field(default_factory=dict)
    file_urls: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _not_empty(self) -> StageResponseIn:
        if not (self.response_text or self.response_data or self.file_urls):
            raise ValueError("A response needs text, data or at least one file.")
        return self


class BadgeDefinition(StrictInput):
    company_id: str
    name: str
    description: str | None = None
    icon: str = "award"
    color: str = Field(default="#1E40AF", pattern=r"^#[0-9A-Fa-f]{6}$")
    badge_type: str = "completion"
    coins_reward: int = Field(default=0, ge=0)
    life_area: str | None = None
    is_active: bool = True


def parse(model: type[M], data: M | dict[str, Any]) -> M:
    """Validate *data* into *model*, raising the domain ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(
            f"Invalid {model.__name__}", details={"errors": errors}
        ) from exc
