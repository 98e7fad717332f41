"""
OpenAI generation provider.

Maps engine conversation turns and tool schemas onto the chat completions
API and maps responses back to GenerationResult. Provider errors propagate
unmodified so the resilient invoker can classify them.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import openai
from openai import AsyncOpenAI

from ..config.loader import resolve_api_key
from ..core.conversation import (
    GenerationResult,
    ImageResult,
    RequestConfig,
    Role,
    ToolCall,
    ToolSchema,
    Turn,
)
from ..core.resilience import default_should_retry
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)


def is_retryable_openai_error(error: BaseException) -> bool:
    """Retry connection failures and timeouts, 5xx, 408 and 429 responses."""
    if isinstance(error, openai.APIConnectionError):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code >= 500 or error.status_code in (408, 429)
    return default_should_retry(error)


def _tool_to_openai(tool: ToolSchema) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def _turn_to_message(turn: Turn) -> Dict[str, Any]:
    if turn.role == Role.USER:
        return {"role": "user", "content": turn.text}
    if turn.role == Role.TOOL:
        return {
            "role": "tool",
            "tool_call_id": turn.tool_call_id,
            "content": json.dumps(turn.tool_response or {}),
        }

    message: Dict[str, Any] = {"role": "assistant", "content": turn.text or None}
    if turn.tool_calls:
        message["tool_calls"] = [
            {
                "id": call.call_id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in turn.tool_calls
        ]
    return message


def build_messages(contents: Sequence[Turn], system_instruction: Optional[str]) -> List[Dict[str, Any]]:
    messages = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    messages.extend(_turn_to_message(turn) for turn in contents)
    return messages


def _parse_arguments(raw: Optional[str], name: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        logger.warning("Tool call '%s' has malformed JSON arguments", name)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAIProvider:
    """GenerationProvider backed by the OpenAI async client.

    top_k is not supported by the chat completions API and is ignored.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize the provider.

        Args:
            api_key: API key; defaults to the OPENAI_API_KEY environment variable
            base_url: Optional API base URL
            client: Preconfigured client, used as-is

        Raises:
            ConfigurationError: If no client is given and no API key is available
        """
        if client is None:
            client = AsyncOpenAI(api_key=resolve_api_key(api_key), base_url=base_url)
        self.client = client

    async def generate(
        self, model: str, contents: Sequence[Turn], config: RequestConfig
    ) -> GenerationResult:
        if not contents:
            raise ValueError("contents is required and cannot be empty")

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": build_messages(contents, config.system_instruction),
        }
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.top_p is not None:
            kwargs["top_p"] = config.top_p
        if config.tools:
            kwargs["tools"] = [_tool_to_openai(t) for t in config.tools]
        if config.json_response:
            kwargs["response_format"] = {"type": "json_object"}
        if config.timeout is not None:
            kwargs["timeout"] = config.timeout

        response = await self.client.chat.completions.create(**kwargs)

        message = response.choices[0].message
        tool_calls = [
            ToolCall(
                name=tc.function.name,
                arguments=_parse_arguments(tc.function.arguments, tc.function.name),
                call_id=tc.id,
            )
            for tc in (message.tool_calls or [])
            if tc.type == "function"
        ]

        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )

        return GenerationResult(text=message.content or "", usage=usage, tool_calls=tool_calls)

    async def edit_image(
        self, model: str, image: bytes, mime_type: str, prompt: str
    ) -> ImageResult:
        """Edit an image; the result comes back as a base64 data URL.

        Raises:
            ValueError: If the response carries no image data
        """
        extension = mime_type.split("/")[-1] or "png"
        response = await self.client.images.edit(
            model=model,
            image=(f"image.{extension}", image, mime_type),
            prompt=prompt,
        )

        data = response.data[0].b64_json if response.data else None
        if not data:
            raise ValueError("No image data found in the AI response.")

        usage = None
        if getattr(response, "usage", None) is not None:
            usage = TokenUsage(
                input_tokens=response.usage.input_tokens or 0,
                output_tokens=response.usage.output_tokens or 0,
            )
        return ImageResult(data_url=f"data:image/png;base64,{data}", usage=usage)
