from __future__ import annotations

import asyncio
import json
import sys
from typing import Dict, List, Optional, Sequence

from core.models import Document, Group, Membership, SearchHit, SessionMatch
from core.openai_client import ModelCall, ModelCallError, call_model
from core.rate_limit import SlidingWindowRateLimiter
from core.text import batched, normalize_text
from core.utils import MalformedResponseError, parse_json_array

from .budget import UnitCounter


class SearchAggregator:
    """Relevance search over a document set, chunked when the set is large."""

    SYSTEM_PROMPT = "You rank web pages by how well they match a search query. Reply with JSON only."

    USER_TEMPLATE = """
Query: {query}

Score how relevant each document is to the query from 0 (unrelated) to 1 (exact match).
Return at most {top_k} of the most relevant documents as a JSON array:
[{{"identity": "<identity exactly as given>", "score": <number>}}]
Leave out documents that are unrelated.

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
        batch_size: int = 10,
        concurrency: int = 4,
        per_doc_tokens: int = 200,
        max_output_tokens: int = 800,
        max_retries: int = 3,
        backoff_base: float = 1.0,
    ) -> None:
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be >= 1")
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

    def _chunk_prompt(self, query: str, chunk: Sequence[Document], top_k: int) -> str:
        payload = [
            {
                "identity": doc.identity,
                "title": doc.title,
                "content": self.counter.truncate(normalize_text(doc.best_text), self.per_doc_tokens),
            }
            for doc in chunk
        ]
        return self.USER_TEMPLATE.format(
            query=query,
            top_k=top_k,
            documents=json.dumps(payload, ensure_ascii=False, indent=1),
        )

    async def _score_chunk(self, query: str, chunk_idx: int, chunk: List[Document], top_k: int) -> List[SearchHit]:
        context = f"search-chunk-{chunk_idx + 1}"
        try:
            raw = await self.call(
                model=self.model,
                system_prompt=self.SYSTEM_PROMPT,
                user_prompt=self._chunk_prompt(query, chunk, top_k),
                max_output_tokens=self.max_output_tokens,
                call_context=context,
                max_retries=self.max_retries,
                backoff_base=self.backoff_base,
                limiter=self.limiter,
            )
            items = parse_json_array(raw, context)
        except (ModelCallError, MalformedResponseError) as exc:
            print(f"[search] {context} contributed nothing ({exc})", file=sys.stderr)
            return []
        titles = {doc.identity: doc.title for doc in chunk}
        hits: List[SearchHit] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            identity = str(item.get("identity") or item.get("url") or item.get("tab_id") or "")
            if identity not in titles:
                continue
            try:
                score = float(item.get("score", item.get("relevance", 0)))
            except (TypeError, ValueError):
                continue
            hits.append(SearchHit(identity=identity, score=score, title=titles[identity]))
        return hits

    async def search(self, query: str, documents: Sequence[Document], top_k: int = 5) -> List[SearchHit]:
        query = (query or "").strip()
        if not query or not documents or top_k < 1:
            return []
        chunks = list(batched(list(documents), self.batch_size))
        cursor = iter(enumerate(chunks))
        best: Dict[str, SearchHit] = {}

        async def worker() -> None:
            for chunk_idx, chunk in cursor:
                for hit in await self._score_chunk(query, chunk_idx, chunk, top_k):
                    current = best.get(hit.identity)
                    if current is None or hit.score > current.score:
                        best[hit.identity] = hit

        await asyncio.gather(*(worker() for _ in range(min(self.concurrency, len(chunks)))))
        ranked = sorted(best.values(), key=lambda h: (-h.score, h.identity))[:top_k]
        print(f"[search] {query!r}: {len(ranked)} hits from {len(documents)} documents in {len(chunks)} chunks")
        return ranked


def match_session(
    hits: Sequence[SearchHit],
    memberships: Sequence[Membership],
    groups: Sequence[Group],
) -> Optional[SessionMatch]:
    """Return the stored session holding the most hits, ties broken by best score."""
    group_of = {m.identity: m.group_id for m in memberships}
    names = {g.id: g.name for g in groups}
    tally: Dict[int, SessionMatch] = {}
    for hit in hits:
        group_id = group_of.get(hit.identity)
        if group_id is None or group_id not in names:
            continue
        match = tally.get(group_id)
        if match is None:
            tally[group_id] = SessionMatch(group_id=group_id, group_name=names[group_id], count=1, best_score=hit.score)
        else:
            match.count += 1
            match.best_score = max(match.best_score, hit.score)
    if not tally:
        return None
    return max(tally.values(), key=lambda m: (m.count, m.best_score, -m.group_id))
