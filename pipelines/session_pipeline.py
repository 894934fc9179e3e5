from __future__ import annotations

import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.exclusions import ExclusionList, is_injectable
from core.models import Document, Origin, RejectionRecord, SearchHit, SessionMatch
from core.openai_client import ModelCall, call_model, configure_model_limits
from core.rate_limit import rate_limiter_registry
from core.tokens import TokenCounter
from ingestion.collector import collect_documents
from ingestion.fetcher import ContentFetcher, ContentSource, FetchTimeouts
from storage.catalog import SessionCatalog

from .budget import BudgetedPrompt, PromptEntry, PromptSection, RequestBudgeter, UnitCounter
from .classifier import STATUS_SKIPPED, ClassificationClient, ClassificationOutcome
from .history import merge_history
from .presummarize import PreSummarizer
from .reconcile import Reconciler, ReconcileReport
from .search import SearchAggregator, match_session

CATALOG_SECTION = "catalog"
NEW_SECTION = "new"

CATALOG_HEADER = "=== EXISTING SESSIONS (documents already filed; group_id/group_name show where) ==="
NEW_HEADER = "=== NEW DOCUMENTS (not yet filed) ==="


class PipelineError(RuntimeError):
    pass


@dataclass
class SessionPipelineConfig:
    catalog_path: Path = Path("sessions.db")
    collect_concurrency: int = 8
    ready_timeout: float = 20.0
    extract_timeout: float = 10.0
    retrieve_timeout: float = 10.0
    pin_sources: bool = True
    lite_model: str = "gpt-5-mini"
    lite_batch_size: int = 5
    lite_concurrency: int = 10
    lite_requests_per_minute: int = 15
    lite_doc_tokens: int = 1000
    lite_max_output_tokens: int = 1200
    classify_model: str = "gpt-5.1"
    classify_budget: int = 200_000
    classify_max_output_tokens: int = 16_000
    classify_reasoning: Optional[str] = "low"
    classify_retries: int = 3
    backoff_base: float = 1.0
    search_model: str = "gpt-5-mini"
    search_batch_size: int = 10
    search_concurrency: int = 4
    search_doc_tokens: int = 200
    search_top_k: int = 5
    model_limits: Optional[Dict[str, int]] = None
    raw_response_dir: Optional[Path] = None


@dataclass
class PipelineReport:
    status: str = "completed"
    sources: int = 0
    eligible: int = 0
    collected: int = 0
    rejected: int = 0
    shadowed: int = 0
    excluded: int = 0
    new_documents: int = 0
    lite_summaries: int = 0
    offered: int = 0
    included: int = 0
    classification: str = STATUS_SKIPPED
    reason: str = ""
    memberships: int = 0
    reconcile: Optional[ReconcileReport] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["reconcile"] = self.reconcile.to_dict() if self.reconcile else None
        return payload


@dataclass
class SearchReport:
    query: str
    hits: List[SearchHit] = field(default_factory=list)
    match: Optional[SessionMatch] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "hits": [asdict(hit) for hit in self.hits],
            "match": self.match.to_dict() if self.match else None,
        }


class Notifier:
    """Receives run outcomes. The base class ignores them."""

    def completed(self, count: int, report: PipelineReport) -> None:
        return None

    def failed(self, reason: str) -> None:
        return None

    def search_completed(self, report: SearchReport) -> None:
        return None


class PrintNotifier(Notifier):
    def completed(self, count: int, report: PipelineReport) -> None:
        print(f"[pipeline] completed: {count} documents filed ({report.classification})")

    def failed(self, reason: str) -> None:
        print(f"[pipeline] failed: {reason}", file=sys.stderr)

    def search_completed(self, report: SearchReport) -> None:
        print(f"[search] {report.query!r}: {len(report.hits)} hits")
        for hit in report.hits:
            print(f"  {hit.score:.2f}  {hit.title or hit.identity}  <{hit.identity}>")
        if report.match:
            print(f"  matches session '{report.match.group_name}' ({report.match.count} hits)")


class SessionPipeline:
    """One run: collect, merge with history, pre-summarize, budget, classify, reconcile."""

    def __init__(
        self,
        config: SessionPipelineConfig,
        source: ContentSource,
        catalog: Optional[SessionCatalog] = None,
        *,
        call: ModelCall = call_model,
        counter: Optional[UnitCounter] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.config = config
        self.source = source
        self.catalog = catalog or SessionCatalog(config.catalog_path)
        self.call = call
        self.counter = counter or TokenCounter(config.classify_model)
        self.notifier = notifier or PrintNotifier()
        if config.model_limits:
            configure_model_limits(config.model_limits)
        lite_limiter_name = f"{config.lite_model}:lite"
        rate_limiter_registry.register(lite_limiter_name, config.lite_requests_per_minute)

        self.fetcher = ContentFetcher(
            source,
            FetchTimeouts(ready=config.ready_timeout, extract=config.extract_timeout, retrieve=config.retrieve_timeout),
            pin_sources=config.pin_sources,
        )
        self.presummarizer = PreSummarizer(
            model=config.lite_model,
            counter=self.counter,
            call=call,
            limiter=rate_limiter_registry.get(lite_limiter_name),
            batch_size=config.lite_batch_size,
            concurrency=config.lite_concurrency,
            per_doc_tokens=config.lite_doc_tokens,
            max_output_tokens=config.lite_max_output_tokens,
            backoff_base=config.backoff_base,
        )
        self.classifier = ClassificationClient(
            model=config.classify_model,
            call=call,
            limiter=rate_limiter_registry.get(config.classify_model),
            max_output_tokens=config.classify_max_output_tokens,
            reasoning=config.classify_reasoning,
            transport_retries=config.classify_retries,
            backoff_base=config.backoff_base,
            raw_response_dir=config.raw_response_dir,
        )
        self.searcher = SearchAggregator(
            model=config.search_model,
            counter=self.counter,
            call=call,
            limiter=rate_limiter_registry.get(config.search_model),
            batch_size=config.search_batch_size,
            concurrency=config.search_concurrency,
            per_doc_tokens=config.search_doc_tokens,
            backoff_base=config.backoff_base,
        )
        self.reconciler = Reconciler(self.catalog)

    def build_sections(self, working_set: Sequence[Document], summaries: Dict[str, str]) -> List[PromptSection]:
        filed = [
            PromptEntry(
                identity=doc.identity,
                title=doc.title,
                body=doc.best_text,
                group_id=doc.group_id,
                group_name=doc.group_name,
            )
            for doc in working_set
            if doc.origin is Origin.HISTORICAL
        ]
        fresh = [
            PromptEntry(identity=doc.identity, title=doc.title, body=summaries.get(doc.identity) or doc.body)
            for doc in working_set
            if doc.origin is Origin.FRESH
        ]
        return [
            PromptSection(name=CATALOG_SECTION, header=CATALOG_HEADER, entries=filed),
            PromptSection(name=NEW_SECTION, header=NEW_HEADER, entries=fresh),
        ]

    async def _record_rejections(self, records: Sequence[RejectionRecord]) -> None:
        for record in records:
            try:
                await self.catalog.record_rejection(record)
            except Exception as exc:
                print(f"[collect] could not record rejection for {record.identity}: {exc!r}", file=sys.stderr)

    def _budget_request(self, working_set: Sequence[Document], summaries: Dict[str, str]) -> BudgetedPrompt:
        sections = self.build_sections(working_set, summaries)
        offered = sum(len(section.entries) for section in sections)
        budget = max(self.config.classify_budget - self.classifier.request_overhead(self.counter, offered), 0)
        prompt = RequestBudgeter(budget, self.counter).build(sections)
        # Token counts are not additive across the seams; re-measure the whole request.
        while budget > 0:
            overflow = self.classifier.request_units(self.counter, prompt) - self.config.classify_budget
            if overflow <= 0:
                break
            budget = max(budget - overflow, 0)
            prompt = RequestBudgeter(budget, self.counter).build(sections)
        return prompt

    async def run(self) -> PipelineReport:
        try:
            return await self._run()
        except PipelineError:
            raise
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            print(f"[pipeline] run failed: {reason}", file=sys.stderr)
            self.notifier.failed(reason)
            raise PipelineError(reason) from exc

    async def _run(self) -> PipelineReport:
        started = time.time()
        report = PipelineReport()
        await self.catalog.initialize()
        exclusions = ExclusionList(await self.catalog.load_exclusions())

        try:
            refs = await self.source.list_sources()
        except Exception as exc:
            reason = f"could not enumerate sources: {exc!r}"
            self.notifier.failed(reason)
            raise PipelineError(reason) from exc
        report.sources = len(refs)
        eligible = [ref for ref in refs if is_injectable(ref.identity) and not exclusions.is_excluded(ref.identity)]
        report.eligible = len(eligible)
        if len(eligible) < len(refs):
            print(f"[collect] skipping {len(refs) - len(eligible)} ineligible or excluded sources")

        collected = await collect_documents(eligible, self.fetcher, self.config.collect_concurrency)
        report.collected = len(collected.succeeded)
        report.rejected = len(collected.failed)
        await self._record_rejections(collected.failed)

        merged = merge_history(collected.succeeded, await self.catalog.load_history(), exclusions)
        report.shadowed = merged.shadowed
        report.excluded = merged.excluded
        report.new_documents = len(merged.new_documents)

        summaries = await self.presummarizer.summarize(merged.new_documents)
        report.lite_summaries = len(summaries)
        for doc in merged.new_documents:
            if doc.identity in summaries:
                doc.summary = summaries[doc.identity]

        prompt = self._budget_request(merged.working_set, summaries)
        report.offered = prompt.offered
        report.included = prompt.included_count

        if not prompt.included_in(NEW_SECTION):
            outcome = ClassificationOutcome(status=STATUS_SKIPPED, reason="no new documents fit the request")
            print(f"[classify] skipped: {outcome.reason}; keeping stored sessions")
        else:
            outcome = await self.classifier.classify(prompt)
        report.classification = outcome.status
        report.reason = outcome.reason

        if outcome.fallback:
            report.reconcile = await self.reconciler.tidy(merged.fresh_titles, purge=merged.excluded_history)
        else:
            report.reconcile = await self.reconciler.reconcile(
                outcome.items,
                offered=prompt.included_identities,
                fresh_titles=merged.fresh_titles,
                purge=merged.excluded_history,
            )

        report.memberships = len(await self.catalog.list_memberships())
        report.duration = time.time() - started
        self.notifier.completed(report.memberships, report)
        return report

    async def search(self, query: str, documents: Optional[Sequence[Document]] = None) -> SearchReport:
        """Rank ``documents`` (stored history by default) against ``query``."""
        await self.catalog.initialize()
        if documents is None:
            exclusions = ExclusionList(await self.catalog.load_exclusions())
            documents = [doc for doc in await self.catalog.load_history() if not exclusions.is_excluded(doc.identity)]
        hits = await self.searcher.search(query, documents, self.config.search_top_k)
        match = match_session(hits, await self.catalog.list_memberships(), await self.catalog.list_groups())
        report = SearchReport(query=query, hits=hits, match=match)
        self.notifier.search_completed(report)
        return report
