from __future__ import annotations

import asyncio
import os
import sys
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Tuple, Union

import openai
from dotenv import load_dotenv
from openai import AsyncOpenAI

from .rate_limit import SlidingWindowRateLimiter, rate_limiter_registry

load_dotenv()

_client: Optional[AsyncOpenAI] = None

OPENAI_TRANSIENT_ERRORS = tuple(
    exc
    for exc in [
        getattr(openai, "RateLimitError", None),
        getattr(openai, "APIError", None),
        getattr(openai, "APIConnectionError", None),
        getattr(openai, "APITimeoutError", None),
    ]
    if exc is not None
)

OPENAI_HARD_ERRORS = tuple(
    exc
    for exc in [
        getattr(openai, "BadRequestError", None),
        getattr(openai, "AuthenticationError", None),
        getattr(openai, "PermissionDeniedError", None),
        getattr(openai, "NotFoundError", None),
    ]
    if exc is not None
)

TRANSIENT_ERRORS = OPENAI_TRANSIENT_ERRORS + (TimeoutError, asyncio.TimeoutError, ConnectionError)

ModelReply = Union[str, Tuple[str, Optional[Dict[str, Optional[int]]]]]


class ModelCallError(RuntimeError):
    pass


class ModelCall(Protocol):
    def __call__(self, **kwargs: Any) -> Awaitable[ModelReply]: ...


def configure_model_limits(model_limits: Dict[str, int], window_seconds: float = 60.0) -> None:
    for model_name, rpm in model_limits.items():
        rate_limiter_registry.register(model_name, rpm, window_seconds)


def get_client() -> AsyncOpenAI:
    """Lazily initialize the OpenAI client so imports don't fail without env configured."""
    global _client
    if _client is None:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ModelCallError("OPENAI_API_KEY is not set in the environment.")
        _client = AsyncOpenAI(api_key=api_key)
    return _client


def _extract_text(resp: Any) -> str:
    text = getattr(resp, "output_text", None)
    if not text and getattr(resp, "output", None):
        for item in resp.output:
            for block in getattr(item, "content", []) or []:
                maybe_text = getattr(block, "text", None)
                if maybe_text:
                    return str(maybe_text)
    return str(text or "")


async def call_model(
    *,
    model: str,
    system_prompt: str,
    user_prompt: str,
    prior_turns: Optional[List[Dict[str, str]]] = None,
    max_output_tokens: Optional[int] = None,
    reasoning: Optional[str] = None,
    text_verbosity: Optional[str] = None,
    call_context: str = "",
    max_retries: int = 5,
    backoff_base: float = 1.0,
    limiter: Optional[SlidingWindowRateLimiter] = None,
    return_usage: bool = False,
) -> ModelReply:
    """Send one request, retrying transient transport failures with exponential backoff.

    Every attempt reserves a slot on the model's limiter first. An empty reply is
    returned as "" so callers treat it as malformed content rather than transport.
    """
    limiter = limiter or rate_limiter_registry.get(model)
    reasoning_arg = {"effort": reasoning} if reasoning else None
    request_args: Dict[str, Any] = {
        "model": model,
        "input": [
            {"role": "system", "content": system_prompt},
            *(prior_turns or []),
            {"role": "user", "content": user_prompt},
        ],
        "max_output_tokens": max_output_tokens,
    }
    if reasoning_arg:
        request_args["reasoning"] = reasoning_arg
    if text_verbosity:
        request_args["text"] = {"verbosity": text_verbosity}

    last_exc: Optional[BaseException] = None
    client = get_client()
    for attempt in range(max_retries):
        if limiter:
            await limiter.acquire()
        try:
            resp = await client.responses.create(**request_args)
        except OPENAI_HARD_ERRORS as exc:
            raise ModelCallError(f"{call_context}: non-retryable OpenAI error: {exc}") from exc
        except TRANSIENT_ERRORS as exc:
            last_exc = exc
            if attempt + 1 >= max_retries:
                break
            backoff = min(backoff_base * (2 ** attempt), 60)
            print(
                f"{call_context}: transient error ({exc!r}); retrying in {backoff:.1f}s",
                file=sys.stderr,
            )
            await asyncio.sleep(backoff)
            continue
        except Exception as exc:
            raise ModelCallError(f"{call_context}: unexpected error ({exc!r})") from exc
        text = _extract_text(resp)
        if not return_usage:
            return text
        usage_payload = None
        usage_obj = getattr(resp, "usage", None)
        if usage_obj:
            usage_payload = {
                "input_tokens": getattr(usage_obj, "input_tokens", None),
                "output_tokens": getattr(usage_obj, "output_tokens", None),
                "total_tokens": getattr(usage_obj, "total_tokens", None),
            }
        return text, usage_payload
    raise ModelCallError(f"{call_context}: failed after {max_retries} attempts ({last_exc!r})")
