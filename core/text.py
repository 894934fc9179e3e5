from __future__ import annotations

import re
from typing import Iterator, List, Sequence, TypeVar

T = TypeVar("T")

CJK_CHAR_RE = re.compile(
    r"[\u4E00-\u9FFF"
    r"\u3400-\u4DBF"
    r"\uF900-\uFAFF"
    r"\u3040-\u309F"
    r"\u30A0-\u30FF"
    r"\uAC00-\uD7AF]"
)


def is_cjk_token(tok: str) -> bool:
    return len(tok) == 1 and bool(CJK_CHAR_RE.match(tok))


def tokenize_mixed(text: str) -> List[str]:
    tokens: List[str] = []
    buff: List[str] = []

    def flush_buff() -> None:
        nonlocal buff
        if buff:
            tokens.append("".join(buff))
            buff = []

    for ch in text:
        if ch.isspace():
            flush_buff()
        elif CJK_CHAR_RE.match(ch):
            flush_buff()
            tokens.append(ch)
        else:
            buff.append(ch)

    flush_buff()
    return tokens


def rebuild_text(tokens: List[str]) -> str:
    if not tokens:
        return ""
    out_parts: List[str] = []
    prev_is_cjk = is_cjk_token(tokens[0])
    out_parts.append(tokens[0])
    for tok in tokens[1:]:
        cur_is_cjk = is_cjk_token(tok)
        if not (prev_is_cjk and cur_is_cjk):
            out_parts.append(" ")
        out_parts.append(tok)
        prev_is_cjk = cur_is_cjk
    return "".join(out_parts)


def normalize_text(text: str) -> str:
    """Collapse page whitespace to single spaces; CJK runs stay unspaced."""
    return rebuild_text(tokenize_mixed(text or ""))


def batched(items: Sequence[T], size: int) -> Iterator[List[T]]:
    if size < 1:
        raise ValueError(f"batch size must be >= 1 (got {size})")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
