from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Collection, Dict, List, Optional

from core.models import ClassificationItem
from core.openai_client import ModelCall, ModelCallError, call_model
from core.rate_limit import SlidingWindowRateLimiter
from core.utils import MalformedResponseError, dump_unparsed_response, parse_json_array

from .budget import BudgetedPrompt, UnitCounter

STATUS_OK = "ok"
STATUS_REPAIRED = "repaired"
STATUS_FALLBACK = "fallback"
STATUS_SKIPPED = "skipped"


@dataclass
class ClassificationOutcome:
    status: str
    items: List[ClassificationItem] = field(default_factory=list)
    reason: str = ""
    calls: int = 0

    @property
    def fallback(self) -> bool:
        return self.status in (STATUS_FALLBACK, STATUS_SKIPPED)


def _as_group_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_classification(raw_text: str, offered: Collection[str], context: str = "classify") -> List[ClassificationItem]:
    """Parse a classifier reply into items for offered identities.

    Raises MalformedResponseError when the reply is not a JSON array, when any
    element lacks an identity or a group name, or when no element names an
    offered identity. Elements for identities never offered are ignored; a
    repeated identity keeps its last element.
    """
    items = parse_json_array(raw_text, context)
    offered_set = set(offered)
    by_identity: Dict[str, ClassificationItem] = {}
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise MalformedResponseError(f"{context}: element {idx} is not an object")
        identity = str(item.get("identity") or item.get("url") or item.get("tab_id") or "").strip()
        group_name = str(item.get("group_name") or item.get("session_name") or "").strip()
        if not identity or not group_name:
            raise MalformedResponseError(f"{context}: element {idx} is missing identity or group name")
        if identity not in offered_set:
            print(f"[classify] ignoring result for unoffered identity {identity}", file=sys.stderr)
            continue
        by_identity[identity] = ClassificationItem(
            identity=identity,
            group_name=group_name,
            summary=str(item.get("summary") or item.get("summarized_content") or "").strip(),
            existing_group_id=_as_group_id(item.get("existing_group_id", item.get("group_id"))),
        )
    if not by_identity:
        raise MalformedResponseError(f"{context}: no usable items")
    return list(by_identity.values())


class ClassificationClient:
    SYSTEM_PROMPT = (
        "You organize a user's open web pages into topical sessions."
        " Reuse an existing session name whenever a page fits it; otherwise invent a short, specific name."
        " Reply with JSON only."
    )

    INSTRUCTIONS = """
Assign every document below to exactly one session and write a two-sentence summary for it.
Documents listed under the existing-sessions section already belong to a session; keep them
there unless they clearly fit another session better.

Return a JSON array with one object per document:
[{{"identity": "<identity exactly as given>", "group_name": "<session name>",
  "summary": "<summary>", "existing_group_id": <id of the reused session or null>}}]

There are {count} documents.

{sections}
"""

    REPAIR_TEMPLATE = (
        "Your previous reply was not valid JSON in the required shape ({error})."
        " Regenerate the complete answer as a valid JSON array containing exactly {count} items,"
        " one per document, with the keys identity, group_name, summary, existing_group_id."
        " Return ONLY the JSON array. No prose, no markdown."
    )

    def __init__(
        self,
        *,
        model: str,
        call: ModelCall = call_model,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        max_output_tokens: int = 16_000,
        reasoning: Optional[str] = None,
        transport_retries: int = 3,
        backoff_base: float = 1.0,
        raw_response_dir: Optional[Path] = None,
    ) -> None:
        self.model = model
        self.call = call
        self.limiter = limiter
        self.max_output_tokens = max_output_tokens
        self.reasoning = reasoning
        self.transport_retries = transport_retries
        self.backoff_base = backoff_base
        self.raw_response_dir = raw_response_dir

    def build_user_prompt(self, prompt: BudgetedPrompt) -> str:
        return self.INSTRUCTIONS.format(count=prompt.included_count, sections=prompt.text)

    def request_overhead(self, counter: UnitCounter, offered: int) -> int:
        """Units the system prompt and instruction wrapper add around the document sections."""
        widest_count = "9" * len(str(max(offered, 1)))
        return counter.count(self.SYSTEM_PROMPT) + counter.count(self.INSTRUCTIONS.format(count=widest_count, sections=""))

    def request_units(self, counter: UnitCounter, prompt: BudgetedPrompt) -> int:
        return counter.count(self.SYSTEM_PROMPT) + counter.count(self.build_user_prompt(prompt))

    async def _send(self, user_prompt: str, context: str, prior_turns: Optional[List[Dict[str, str]]] = None) -> str:
        return await self.call(
            model=self.model,
            system_prompt=self.SYSTEM_PROMPT,
            user_prompt=user_prompt,
            prior_turns=prior_turns,
            max_output_tokens=self.max_output_tokens,
            reasoning=self.reasoning,
            call_context=context,
            max_retries=self.transport_retries,
            backoff_base=self.backoff_base,
            limiter=self.limiter,
        )

    def _record_unparsed(self, raw: str, context: str) -> None:
        if self.raw_response_dir is not None:
            path = dump_unparsed_response(raw, context, self.raw_response_dir)
            print(f"[classify] saved unparsed reply to {path}", file=sys.stderr)

    async def classify(self, prompt: BudgetedPrompt) -> ClassificationOutcome:
        offered = prompt.included_identities
        if not offered:
            return ClassificationOutcome(status=STATUS_SKIPPED, reason="no documents fit the budget")
        user_prompt = self.build_user_prompt(prompt)
        calls = 0
        try:
            calls += 1
            raw = await self._send(user_prompt, "classify")
        except ModelCallError as exc:
            print(f"[classify] transport failed: {exc}", file=sys.stderr)
            return ClassificationOutcome(status=STATUS_FALLBACK, reason=f"transport: {exc}", calls=calls)
        try:
            items = parse_classification(raw, offered, "classify")
            print(f"[classify] {len(items)}/{len(offered)} documents classified")
            return ClassificationOutcome(status=STATUS_OK, items=items, calls=calls)
        except MalformedResponseError as exc:
            first_error = exc
            self._record_unparsed(raw, "classify")

        print(f"[classify] malformed reply ({first_error}); attempting one repair", file=sys.stderr)
        repair_prompt = self.REPAIR_TEMPLATE.format(error=first_error, count=len(offered))
        try:
            calls += 1
            repaired = await self._send(
                repair_prompt,
                "classify-repair",
                prior_turns=[
                    {"role": "user", "content": user_prompt},
                    {"role": "assistant", "content": raw or ""},
                ],
            )
        except ModelCallError as exc:
            print(f"[classify] repair transport failed: {exc}", file=sys.stderr)
            return ClassificationOutcome(status=STATUS_FALLBACK, reason=f"repair transport: {exc}", calls=calls)
        try:
            items = parse_classification(repaired, offered, "classify-repair")
        except MalformedResponseError as exc:
            self._record_unparsed(repaired, "classify-repair")
            print(f"[classify] repair also malformed ({exc}); keeping stored sessions", file=sys.stderr)
            return ClassificationOutcome(status=STATUS_FALLBACK, reason=f"malformed after repair: {exc}", calls=calls)
        print(f"[classify] repaired reply: {len(items)}/{len(offered)} documents classified")
        return ClassificationOutcome(status=STATUS_REPAIRED, items=items, calls=calls)
