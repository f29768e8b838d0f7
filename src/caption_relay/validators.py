"""Request payload validation for the local HTTP surface."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from caption_relay.constants import (
    FONT_SIZE_MAX,
    FONT_SIZE_MIN,
    MAX_TEXT_LENGTH,
    POSITION_MAX,
    POSITION_MIN,
)


class BroadcastPayload(BaseModel):
    """Body of ``POST /broadcast``."""

    text: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)


class StylePayload(BaseModel):
    """Body of ``POST /style``. Every field is optional.

    Numeric fields accept numbers or numeric strings.
    """

    model_config = ConfigDict(extra="ignore")

    fontSize: Optional[float] = Field(default=None, ge=FONT_SIZE_MIN, le=FONT_SIZE_MAX)
    posX: Optional[float] = Field(default=None, ge=POSITION_MIN, le=POSITION_MAX)
    posY: Optional[float] = Field(default=None, ge=POSITION_MIN, le=POSITION_MAX)
    bgStyle: Optional[Literal["none", "box"]] = None

    def partial(self) -> dict[str, Any]:
        """Only the fields that were provided, for broadcasting."""
        return self.model_dump(exclude_none=True)


def field_errors(exc: ValidationError) -> dict[str, list[str]]:
    """Flatten a ValidationError to ``{field: [messages]}``."""
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "body"
        errors.setdefault(location, []).append(error["msg"])
    return errors
