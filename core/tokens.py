from __future__ import annotations

from functools import lru_cache

import tiktoken


@lru_cache(maxsize=32)
def _encoding_for_model(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(text: str, model: str) -> int:
    if not text:
        return 0
    return len(_encoding_for_model(model).encode(text))


def truncate_to_tokens(text: str, max_tokens: int, model: str) -> str:
    if max_tokens <= 0 or not text:
        return ""
    enc = _encoding_for_model(model)
    ids = enc.encode(text)
    if len(ids) <= max_tokens:
        return text
    return enc.decode(ids[:max_tokens])


class TokenCounter:
    """Measures and cuts text in the provider's native unit for one model."""

    def __init__(self, model: str) -> None:
        self.model = model

    def count(self, text: str) -> int:
        return estimate_tokens(text, self.model)

    def truncate(self, text: str, max_tokens: int) -> str:
        return truncate_to_tokens(text, max_tokens, self.model)
