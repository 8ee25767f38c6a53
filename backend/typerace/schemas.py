from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Accepts camelCase keys from clients as well as snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JoinRoomIn(WireModel):
    room_id: str = Field(min_length=1)


class StartGameIn(WireModel):
    room_id: str = Field(min_length=1)


class KeystrokeIn(WireModel):
    character: str = Field(min_length=1, max_length=1)


class TypingProgressIn(WireModel):
    room_id: str = Field(min_length=1)
    sentence_index: int = Field(ge=0)
    input_text: str
    keystroke: Optional[KeystrokeIn] = None


class SentenceCompletedIn(WireModel):
    room_id: str = Field(min_length=1)
    sentence_index: int = Field(ge=0)


class InboundFrame(BaseModel):
    event: str
    data: dict[str, Any] = Field(default_factory=dict)


def camelize(value: Any) -> Any:
    """Recursively rewrite dict keys to camelCase for the wire."""
    if isinstance(value, dict):
        return {to_camel(k) if isinstance(k, str) else k: camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value
