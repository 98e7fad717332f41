"""
Conversation turns and the provider-facing request/response types.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import StructuredResponseError
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class Role(Enum):
    USER = "user"
    MODEL = "model"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A function call requested by the model."""
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass(frozen=True)
class Turn:
    """One entry of the conversation context."""
    role: Role
    text: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_response: Optional[Dict[str, Any]] = None

    @classmethod
    def user(cls, text: str) -> "Turn":
        return cls(role=Role.USER, text=text)

    @classmethod
    def model(cls, text: str, tool_calls: Sequence[ToolCall] = ()) -> "Turn":
        return cls(role=Role.MODEL, text=text, tool_calls=tuple(tool_calls))

    @classmethod
    def tool_result(cls, call: ToolCall, response: Dict[str, Any]) -> "Turn":
        return cls(
            role=Role.TOOL,
            tool_call_id=call.call_id,
            tool_name=call.name,
            tool_response=dict(response),
        )


@dataclass(frozen=True)
class ToolSchema:
    """Declaration of a function the model may call (JSON Schema parameters)."""
    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass(frozen=True)
class RequestConfig:
    """Per-request generation settings."""
    system_instruction: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    tools: Tuple[ToolSchema, ...] = ()
    json_response: bool = False
    timeout: Optional[float] = None


@dataclass(frozen=True)
class GenerationResult:
    """Provider response with optional parts made explicit."""
    text: str
    usage: Optional[TokenUsage] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass(frozen=True)
class ImageResult:
    data_url: str
    usage: Optional[TokenUsage] = None


class GenerationProvider(Protocol):
    """A single request/response generation backend."""

    async def generate(
        self, model: str, contents: Sequence[Turn], config: RequestConfig
    ) -> GenerationResult:
        ...

    async def edit_image(
        self, model: str, image: bytes, mime_type: str, prompt: str
    ) -> ImageResult:
        ...


def parse_structured_response(text: str) -> Dict[str, Any]:
    """Parse a JSON object from a model response.

    Models sometimes wrap JSON in a markdown code fence; one recovery pass
    extracts the fenced body before giving up.

    Raises:
        StructuredResponseError: If no JSON object can be parsed
    """
    raw = (text or "").strip()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Initial JSON parse failed, trying to extract from markdown")
        match = _JSON_FENCE.search(raw)
        if not match:
            raise StructuredResponseError("AI returned a non-JSON response.", raw)
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError:
            raise StructuredResponseError("AI returned invalid JSON format.", raw)

    if not isinstance(parsed, dict):
        raise StructuredResponseError("AI returned JSON that is not an object.", raw)
    return parsed
