from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from typing import List, Optional

from core.models import Document, FetchedContent, Origin, SourceRef


class FetchError(RuntimeError):
    def __init__(self, identity: str, reason: str, detail: str = "") -> None:
        super().__init__(f"{identity}: {reason}{f' ({detail})' if detail else ''}")
        self.identity = identity
        self.reason = reason


@dataclass
class FetchTimeouts:
    ready: float = 20.0
    extract: float = 10.0
    retrieve: float = 10.0


class ContentSource:
    """The external "get document text for source S" capability.

    Subclasses must implement ``list_sources`` and ``retrieve``. The remaining
    hooks default to no-ops for sources that are never stale and need no
    preparation step before their text can be read.
    """

    async def list_sources(self) -> List[SourceRef]:
        raise NotImplementedError

    async def retrieve(self, ref: SourceRef) -> FetchedContent:
        raise NotImplementedError

    async def revive(self, ref: SourceRef) -> None:
        return None

    async def wait_ready(self, ref: SourceRef) -> None:
        return None

    async def extract(self, ref: SourceRef) -> None:
        return None

    async def set_pinned(self, ref: SourceRef, pinned: bool) -> None:
        return None


class ContentFetcher:
    """Wraps a ContentSource with per-step timeouts and stale-source handling."""

    def __init__(self, source: ContentSource, timeouts: Optional[FetchTimeouts] = None, pin_sources: bool = True) -> None:
        self.source = source
        self.timeouts = timeouts or FetchTimeouts()
        self.pin_sources = pin_sources

    async def _pin(self, ref: SourceRef, pinned: bool) -> None:
        if not self.pin_sources:
            return
        try:
            await self.source.set_pinned(ref, pinned)
        except Exception as exc:
            print(f"[collect] could not {'pin' if pinned else 'unpin'} {ref.identity}: {exc!r}", file=sys.stderr)

    async def _revive(self, ref: SourceRef) -> None:
        try:
            await self.source.revive(ref)
        except Exception as exc:
            print(f"[collect] revive failed for {ref.identity}: {exc!r}", file=sys.stderr)
            return
        try:
            await asyncio.wait_for(self.source.wait_ready(ref), timeout=self.timeouts.ready)
            print(f"[collect] revived stale source {ref.identity}")
        except asyncio.TimeoutError:
            print(
                f"[collect] {ref.identity} not ready after {self.timeouts.ready:.0f}s; extracting anyway",
                file=sys.stderr,
            )
        except Exception as exc:
            print(f"[collect] readiness wait failed for {ref.identity}: {exc!r}", file=sys.stderr)

    async def fetch(self, ref: SourceRef) -> Document:
        await self._pin(ref, True)
        try:
            if ref.stale:
                await self._revive(ref)
            try:
                await asyncio.wait_for(self.source.extract(ref), timeout=self.timeouts.extract)
            except asyncio.TimeoutError as exc:
                raise FetchError(ref.identity, "extract_timeout") from exc
            except Exception as exc:
                raise FetchError(ref.identity, "extract_failed", repr(exc)) from exc
            try:
                content = await asyncio.wait_for(self.source.retrieve(ref), timeout=self.timeouts.retrieve)
            except asyncio.TimeoutError as exc:
                raise FetchError(ref.identity, "retrieve_timeout") from exc
            except Exception as exc:
                raise FetchError(ref.identity, "retrieve_failed", repr(exc)) from exc
        finally:
            await self._pin(ref, False)
        if not content or not (content.identity or ref.identity) or not (content.body or "").strip():
            raise FetchError(ref.identity, "empty_response")
        return Document(
            identity=content.identity or ref.identity,
            title=content.title or ref.title,
            body=content.body or "",
            origin=Origin.FRESH,
        )
