"""Request bodies accepted by the control API."""

from __future__ import annotations

import json
from typing import Any, TypeVar

from aiohttp import web
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from orchid_orchestrator.errors import InvalidRequestError
from orchid_orchestrator.runtime.orchestrator import ServiceAction

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class ActionRequest(_Request):
    action: ServiceAction

    @field_validator("action", mode="before")
    @classmethod
    def _parse_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return ServiceAction.parse(value)
            except ValueError:
                return value
        return value


class KillRequest(_Request):
    force: bool = False


class BatchRequest(_Request):
    service_ids: list[str] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("service_ids", "serviceIds"),
    )


async def read_json(request: web.Request) -> dict[str, Any]:
    """Return the JSON object body; an empty body reads as ``{}``."""
    if not request.can_read_body:
        return {}
    text = await request.text()
    if not text.strip():
        return {}
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidRequestError(f"Request body is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return payload


def parse_body(model: type[ModelT], payload: dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        details = [
            {"loc": ".".join(str(loc) for loc in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        raise InvalidRequestError("Invalid request body", details=details) from exc


def parse_lines(raw: str | None, *, default: int = 50, maximum: int = 1000) -> int:
    if raw is None or raw == "":
        return default
    try:
        lines = int(raw)
    except ValueError as exc:
        raise InvalidRequestError("Lines parameter must be an integer") from exc
    if lines < 1 or lines > maximum:
        raise InvalidRequestError(f"Lines parameter must be between 1 and {maximum}")
    return lines
