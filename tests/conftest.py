"""Shared fakes for the session pipeline tests: no network, no tokenizer downloads."""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import pytest

from core.models import FetchedContent, SourceRef
from ingestion.fetcher import ContentSource
from storage.catalog import SessionCatalog


class WordCounter:
    """Counts whitespace-separated words; additive across newline-joined parts."""

    def count(self, text: str) -> int:
        return len(text.split())

    def truncate(self, text: str, max_units: int) -> str:
        if max_units <= 0:
            return ""
        return " ".join(text.split()[:max_units])


class FakeSource(ContentSource):
    def __init__(
        self,
        pages: Dict[str, Tuple[str, str]],
        *,
        delay: float = 0.0,
        hang: Iterable[str] = (),
        broken: Iterable[str] = (),
        stale: Iterable[str] = (),
        never_ready: Iterable[str] = (),
        list_error: Optional[Exception] = None,
    ) -> None:
        self.pages = dict(pages)
        self.delay = delay
        self.hang = set(hang)
        self.broken = set(broken)
        self.stale = set(stale)
        self.never_ready = set(never_ready)
        self.list_error = list_error
        self.in_flight = 0
        self.peak_in_flight = 0
        self.revived: List[str] = []
        self.pin_calls: List[Tuple[str, bool]] = []
        self.retrieved: List[str] = []

    async def list_sources(self) -> List[SourceRef]:
        if self.list_error is not None:
            raise self.list_error
        return [
            SourceRef(ref=identity, identity=identity, title=title, stale=identity in self.stale)
            for identity, (title, _) in self.pages.items()
        ]

    async def revive(self, ref: SourceRef) -> None:
        self.revived.append(ref.identity)

    async def wait_ready(self, ref: SourceRef) -> None:
        if ref.identity in self.never_ready:
            await asyncio.sleep(10)

    async def set_pinned(self, ref: SourceRef, pinned: bool) -> None:
        self.pin_calls.append((ref.identity, pinned))

    async def retrieve(self, ref: SourceRef) -> FetchedContent:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if ref.identity in self.hang:
                await asyncio.sleep(10)
            await asyncio.sleep(self.delay)
            if ref.identity in self.broken:
                raise RuntimeError("extraction script crashed")
            title, body = self.pages[ref.identity]
            self.retrieved.append(ref.identity)
            return FetchedContent(identity=ref.identity, title=title, body=body)
        finally:
            self.in_flight -= 1


Reply = Union[str, BaseException]


class FakeModel:
    """Async stand-in for ``call_model``.

    ``handler`` receives the call's keyword arguments and returns the reply text
    or an exception to raise. A list of replies is consumed in order instead.
    """

    def __init__(self, handler: Union[Callable[[Dict[str, Any]], Reply], List[Reply]]) -> None:
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    def contexts(self) -> List[str]:
        return [call.get("call_context", "") for call in self.calls]

    def calls_for(self, prefix: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call.get("call_context", "").startswith(prefix)]

    async def __call__(self, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        await asyncio.sleep(0)
        if callable(self.handler):
            reply = self.handler(kwargs)
        else:
            reply = self.handler.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


IDENTITY_LINE = re.compile(r"^identity: (\S+)$", re.MULTILINE)


def offered_identities(user_prompt: str) -> List[str]:
    return IDENTITY_LINE.findall(user_prompt)


def grouping_handler(assign: Callable[[str], str]) -> Callable[[Dict[str, Any]], str]:
    """Answers lite batches with no summaries and classifies every offered identity with ``assign``."""

    def handler(kwargs: Dict[str, Any]) -> str:
        if kwargs.get("call_context", "").startswith("lite"):
            return "[]"
        return json.dumps(
            [
                {"identity": identity, "group_name": assign(identity), "summary": f"about {identity}"}
                for identity in offered_identities(kwargs["user_prompt"])
            ]
        )

    return handler


@pytest.fixture
def word_counter() -> WordCounter:
    return WordCounter()


@pytest.fixture
def catalog(tmp_path: Path) -> SessionCatalog:
    store = SessionCatalog(tmp_path / "sessions.db")
    asyncio.run(store.initialize())
    return store
