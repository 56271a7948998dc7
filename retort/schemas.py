"""Pydantic models for the chat-completion wire format.

Upstream bodies are validated here before any field is read: a body that
does not fit CompletionResponse / StreamChunk is rejected as a whole
rather than read attribute by attribute.
"""

from __future__ import annotations

import math
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """One entry of the conversation context. Immutable."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class CompletionRequest(BaseModel):
    """Body POSTed to the upstream endpoint. Built fresh per call."""

    model: str
    messages: list[ChatMessage]
    stream: bool = False
    max_tokens: int = 1000
    temperature: float = 0.8

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Non-streaming response
# ---------------------------------------------------------------------------


class Choice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResponse(BaseModel):
    """Full (stream=false) completion body. Only the first choice is used."""

    id: str = ""
    object: str = ""
    created: int = 0
    model: str = ""
    choices: list[Choice] = Field(min_length=1)
    usage: Usage | None = None

    @property
    def content(self) -> str:
        return self.choices[0].message.content


# ---------------------------------------------------------------------------
# Streaming chunks
# ---------------------------------------------------------------------------


class Delta(BaseModel):
    role: Role | None = None
    content: str | None = None


class DeltaChoice(BaseModel):
    index: int = 0
    delta: Delta = Field(default_factory=Delta)
    finish_reason: str | None = None


class StreamChunk(BaseModel):
    """One ``data:`` frame of a streaming completion."""

    id: str = ""
    model: str = ""
    choices: list[DeltaChoice] = Field(default_factory=list)

    @property
    def content(self) -> str:
        """Content increment of the first choice, or "" if none."""
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""


# ---------------------------------------------------------------------------
# Server boundary
# ---------------------------------------------------------------------------


class GenerateRequest(BaseModel):
    """Body accepted by the relay and reply endpoints."""

    opponent_message: str = Field(validation_alias="opponentMessage", min_length=1)
    intensity: int | float = 5
    stream: bool = False

    @field_validator("opponent_message", mode="before")
    @classmethod
    def _require_string(cls, value: Any) -> Any:
        if not isinstance(value, str):
            raise ValueError("opponentMessage must be a string")
        return value

    @field_validator("intensity", mode="before")
    @classmethod
    def _coerce_intensity(cls, value: Any) -> int | float:
        """Numeric value as sent; non-numeric, zero or missing falls back to 5.

        Fractions are kept, so 7.5 has no label of its own and gets the
        default one.
        """
        if isinstance(value, bool) or value is None:
            return 5
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 5
        if not math.isfinite(number) or number == 0:
            return 5
        return int(number) if number.is_integer() else number

    @field_validator("stream", mode="before")
    @classmethod
    def _coerce_stream(cls, value: Any) -> bool:
        """Any JSON value is read by truthiness; arrays and objects count as true."""
        if isinstance(value, (list, dict)):
            return True
        return bool(value)


class ApiResponse(BaseModel):
    """Envelope returned by the reply endpoints."""

    success: bool
    data: list[str] | None = None
    error: str | None = None
