from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import dataclass, field
from typing import List, Sequence

from core.models import Document, RejectionRecord, SourceRef

from .fetcher import ContentFetcher, FetchError


@dataclass
class CollectionResult:
    succeeded: List[Document] = field(default_factory=list)
    failed: List[RejectionRecord] = field(default_factory=list)
    peak_in_flight: int = 0


async def collect_documents(
    refs: Sequence[SourceRef],
    fetcher: ContentFetcher,
    concurrency: int = 8,
) -> CollectionResult:
    """Fetch every source with at most ``concurrency`` fetches in flight.

    Workers share one cursor over ``refs``; completion order is arbitrary. A
    FetchError becomes a RejectionRecord and never stops the other workers.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1 (got {concurrency})")
    result = CollectionResult()
    cursor = iter(refs)
    in_flight = 0
    started = time.time()

    async def worker() -> None:
        nonlocal in_flight
        for ref in cursor:
            in_flight += 1
            result.peak_in_flight = max(result.peak_in_flight, in_flight)
            try:
                doc = await fetcher.fetch(ref)
            except FetchError as exc:
                print(f"[collect] failed {ref.identity}: {exc.reason}", file=sys.stderr)
                result.failed.append(RejectionRecord(identity=ref.identity, reason=exc.reason))
            else:
                result.succeeded.append(doc)
            finally:
                in_flight -= 1

    workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, max(len(refs), 1)))]
    await asyncio.gather(*workers)
    print(
        f"[collect] {len(result.succeeded)} collected, {len(result.failed)} rejected "
        f"from {len(refs)} sources in {time.time() - started:.1f}s"
    )
    return result
