from __future__ import annotations

import json
import re
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Dict, List, Optional


class MalformedResponseError(ValueError):
    pass


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.strip()).strip("-").lower()
    return slug or "document"


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)


def _strip_code_fence(text: str) -> str:
    if "```" not in text:
        return text
    match = re.search(r"```[a-zA-Z]*\s*(.*?)\s*```", text, re.DOTALL)
    return match.group(1).strip() if match else text


def parse_json_array(raw_text: Optional[str], context: str) -> List[Any]:
    """Locate the first JSON array in a model reply, tolerating fences and preamble."""
    cleaned = str(raw_text or "").strip()
    decoder = json.JSONDecoder()

    def _try_load(text: str) -> Optional[List[Any]]:
        with suppress(ValueError):
            obj = json.loads(text)
            if isinstance(obj, list):
                return obj
        with suppress(ValueError):
            obj, _ = decoder.raw_decode(text)
            if isinstance(obj, list):
                return obj
        return None

    candidates: List[str] = []
    fenced = _strip_code_fence(cleaned)
    if fenced:
        candidates.append(fenced)
    if cleaned and cleaned != fenced:
        candidates.append(cleaned)
    # Walk through each opening bracket to allow trailing/preamble text
    for text in list(candidates):
        idx = text.find("[")
        while idx != -1:
            candidates.append(text[idx:])
            idx = text.find("[", idx + 1)

    for candidate in candidates:
        parsed = _try_load(candidate)
        if parsed is not None:
            return parsed
    raise MalformedResponseError(f"{context}: could not locate JSON array")


def dump_unparsed_response(text: str, context: str, directory: Path) -> Path:
    safe_ctx = slugify(context) or "context"
    timestamp = int(time.time())
    dump_path = directory / f"{safe_ctx}-{timestamp}.txt"
    with suppress(OSError):
        ensure_dir(dump_path.parent)
        dump_path.write_text(text, encoding="utf-8")
    return dump_path
