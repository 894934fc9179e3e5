from __future__ import annotations

import asyncio
import json
import sys
from typing import Dict, List, Optional, Sequence

from core.models import Document
from core.openai_client import ModelCall, ModelCallError, call_model
from core.rate_limit import SlidingWindowRateLimiter
from core.text import batched, normalize_text
from core.utils import MalformedResponseError, parse_json_array

from .budget import UnitCounter


class PreSummarizer:
    """Cheap batch summaries for documents that have no stored summary yet."""

    SYSTEM_PROMPT = (
        "You condense web pages into short neutral summaries for later topic grouping."
        " Reply with JSON only."
    )

    USER_TEMPLATE = """
Summarize each document below in one or two sentences, in the document's own language.

Return a JSON array with exactly one object per document, in any order:
[{{"identity": "<identity exactly as given>", "summary": "<summary>"}}]

Documents:
{documents}
"""

    def __init__(
        self,
        *,
        model: str,
        counter: UnitCounter,
        call: ModelCall = call_model,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        batch_size: int = 5,
        concurrency: int = 10,
        per_doc_tokens: int = 1000,
        max_output_tokens: int = 1200,
        max_retries: int = 3,
        backoff_base: float = 1.0,
    ) -> None:
        self.model = model
        self.counter = counter
        self.call = call
        self.limiter = limiter
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.per_doc_tokens = per_doc_tokens
        self.max_output_tokens = max_output_tokens
        self.max_retries = max_retries
        self.backoff_base = backoff_base

    def _batch_prompt(self, batch: Sequence[Document]) -> str:
        payload = [
            {
                "identity": doc.identity,
                "title": doc.title,
                "content": self.counter.truncate(normalize_text(doc.body), self.per_doc_tokens),
            }
            for doc in batch
        ]
        return self.USER_TEMPLATE.format(documents=json.dumps(payload, ensure_ascii=False, indent=1))

    async def _summarize_batch(self, batch_idx: int, batch: List[Document]) -> Dict[str, str]:
        context = f"lite-batch-{batch_idx + 1}"
        try:
            raw = await self.call(
                model=self.model,
                system_prompt=self.SYSTEM_PROMPT,
                user_prompt=self._batch_prompt(batch),
                max_output_tokens=self.max_output_tokens,
                call_context=context,
                max_retries=self.max_retries,
                backoff_base=self.backoff_base,
                limiter=self.limiter,
            )
            items = parse_json_array(raw, context)
        except (ModelCallError, MalformedResponseError) as exc:
            print(f"[lite] {context}: no summaries ({exc})", file=sys.stderr)
            return {}
        wanted = {doc.identity for doc in batch}
        summaries: Dict[str, str] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            identity = str(item.get("identity") or item.get("url") or item.get("tab_id") or "")
            summary = str(item.get("summary") or item.get("summarized_content") or "").strip()
            if identity in wanted and summary:
                summaries[identity] = summary
        return summaries

    async def summarize(self, documents: Sequence[Document]) -> Dict[str, str]:
        if not documents:
            return {}
        batches = list(batched(list(documents), self.batch_size))
        cursor = iter(enumerate(batches))
        merged: Dict[str, str] = {}

        async def worker() -> None:
            for batch_idx, batch in cursor:
                merged.update(await self._summarize_batch(batch_idx, batch))

        await asyncio.gather(*(worker() for _ in range(min(self.concurrency, len(batches)))))
        print(f"[lite] summarized {len(merged)}/{len(documents)} documents in {len(batches)} batches")
        return merged
