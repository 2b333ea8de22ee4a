from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_fixed

from .config import DEFAULT_OPENAI_MODEL_DRAFT
from .errors import ChatError, ModelUnavailableError
from .utils import clean_block, safe_json_loads

logger = logging.getLogger(__name__)

_USAGE_LOG = threading.local()


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatResponse:
    """Canonical chat result; vendor payloads are converted into this at the adapter."""

    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[Dict[str, int]] = None


@runtime_checkable
class ChatProvider(Protocol):
    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        *,
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        temperature: float = 0.0,
        max_tokens: int = 500,
    ) -> ChatResponse: ...


def _requires_completion_tokens(model: str) -> bool:
    # GPT-5 nano (and similar) expect max_completion_tokens instead of max_tokens.
    return "gpt-5-nano" in model.lower()


def _requires_fixed_temperature(model: str) -> bool:
    return "gpt-5-nano" in model.lower()


def _is_max_tokens_unsupported(exc: Exception) -> bool:
    """Detect new-model errors that require max_completion_tokens instead of max_tokens."""
    text = str(exc).lower()
    return "max_tokens" in text and "max_completion_tokens" in text


def _is_temperature_unsupported(exc: Exception) -> bool:
    """Detect models that only allow the default temperature."""
    text = str(exc).lower()
    return "temperature" in text and "supported" in text


def reset_usage_log() -> None:
    _USAGE_LOG.entries = []


def record_usage(usage: Dict[str, Any]) -> None:
    prompt = int(usage.get("prompt_tokens", 0))
    completion = int(usage.get("completion_tokens", 0))
    total = int(usage.get("total_tokens", prompt + completion))
    log = getattr(_USAGE_LOG, "entries", None)
    if log is None:
        log = []
        _USAGE_LOG.entries = log
    log.append({"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": total})


def usage_totals() -> Dict[str, int]:
    log = getattr(_USAGE_LOG, "entries", []) or []
    totals = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    for entry in log:
        for key in totals:
            totals[key] += int(entry.get(key, 0))
    return totals


def to_chat_response(raw: Any) -> ChatResponse:
    choice = raw.choices[0].message
    calls: List[ToolCall] = []
    for tc in getattr(choice, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        args = safe_json_loads(getattr(fn, "arguments", "") or "{}")
        calls.append(ToolCall(id=getattr(tc, "id", ""), name=getattr(fn, "name", ""), arguments=args if isinstance(args, dict) else {}))
    usage = None
    usage_data = getattr(raw, "usage", None)
    if usage_data:
        usage = {
            "prompt_tokens": getattr(usage_data, "prompt_tokens", 0),
            "completion_tokens": getattr(usage_data, "completion_tokens", 0),
            "total_tokens": getattr(usage_data, "total_tokens", 0),
        }
        record_usage(usage)
    return ChatResponse(content=(choice.content or "").strip(), tool_calls=calls, usage=usage)


class OpenAIChatProvider:
    def __init__(self, model: str = DEFAULT_OPENAI_MODEL_DRAFT, *, client: Any = None) -> None:
        self.model = model
        self._use_completion_tokens = _requires_completion_tokens(model)
        self._fixed_temperature = _requires_fixed_temperature(model)
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI()
        self._client = client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(0.25),
        retry=retry_if_not_exception_type(ModelUnavailableError),
        reraise=True,
    )
    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        *,
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        temperature: float = 0.0,
        max_tokens: int = 500,
    ) -> ChatResponse:
        import openai

        use_completion_tokens = self._use_completion_tokens
        temp: Optional[float] = None if self._fixed_temperature else temperature

        async def _call() -> Any:
            token_param = {"max_completion_tokens": max_tokens} if use_completion_tokens else {"max_tokens": max_tokens}
            params: Dict[str, Any] = {"model": self.model, "messages": list(messages), **token_param}
            if temp is not None:
                params["temperature"] = temp
            if tools:
                params["tools"] = list(tools)
            return await self._client.chat.completions.create(**params)

        while True:
            try:
                raw = await _call()
                break
            except (openai.BadRequestError, openai.NotFoundError) as exc:
                if not use_completion_tokens and _is_max_tokens_unsupported(exc):
                    use_completion_tokens = self._use_completion_tokens = True
                elif temp is not None and _is_temperature_unsupported(exc):
                    temp = None
                    self._fixed_temperature = True
                else:
                    # Surface invalid/missing model errors without retrying them.
                    raise ModelUnavailableError(f"OpenAI model '{self.model}' is not available: {exc}") from exc
                logger.debug("retrying %s with adjusted parameters: %s", self.model, exc)
            except openai.OpenAIError as exc:
                raise ChatError(f"chat completion failed: {exc}") from exc
        return to_chat_response(raw)


async def chat_complete(provider: ChatProvider, system: str, user: str, *, max_tokens: int = 500) -> str:
    response = await provider.complete(
        [{"role": "system", "content": system}, {"role": "user", "content": user}], max_tokens=max_tokens
    )
    return clean_block(response.content)


def tool_result_message(call: ToolCall, payload: Any) -> Dict[str, Any]:
    content = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return {"role": "tool", "tool_call_id": call.id, "content": content}


__all__ = [
    "ToolCall",
    "ChatResponse",
    "ChatProvider",
    "ModelUnavailableError",
    "OpenAIChatProvider",
    "chat_complete",
    "to_chat_response",
    "tool_result_message",
    "reset_usage_log",
    "record_usage",
    "usage_totals",
]
