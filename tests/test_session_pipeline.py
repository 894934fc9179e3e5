from __future__ import annotations

import asyncio
import json
import sqlite3
from typing import Any, Dict, List

import pytest
from conftest import FakeModel, FakeSource, WordCounter, grouping_handler, offered_identities

from core.models import Membership
from pipelines.session_pipeline import (
    Notifier,
    PipelineError,
    PipelineReport,
    SearchReport,
    SessionPipeline,
    SessionPipelineConfig,
)
from storage.catalog import SessionCatalog

PAGES = {
    "https://bread.example/": ("Sourdough basics", "flour water salt starter"),
    "https://pasta.example/": ("Fresh pasta", "eggs flour rolling pin"),
    "https://lisbon.example/": ("Lisbon in three days", "trams tiles pastel de nata"),
}

TOPICS = {
    "https://bread.example/": "Cooking",
    "https://pasta.example/": "Cooking",
    "https://lisbon.example/": "Travel",
}


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.completed_counts: List[int] = []
        self.failures: List[str] = []
        self.searches: List[SearchReport] = []

    def completed(self, count: int, report: PipelineReport) -> None:
        self.completed_counts.append(count)

    def failed(self, reason: str) -> None:
        self.failures.append(reason)

    def search_completed(self, report: SearchReport) -> None:
        self.searches.append(report)


def _config(catalog: SessionCatalog, **overrides: Any) -> SessionPipelineConfig:
    base = dict(
        catalog_path=catalog.path,
        ready_timeout=0.05,
        extract_timeout=0.5,
        retrieve_timeout=0.2,
        classify_budget=10_000,
    )
    base.update(overrides)
    return SessionPipelineConfig(**base)


def _pipeline(catalog, source, model, notifier=None, **overrides) -> SessionPipeline:
    return SessionPipeline(
        _config(catalog, **overrides),
        source,
        catalog,
        call=model,
        counter=WordCounter(),
        notifier=notifier or RecordingNotifier(),
    )


def _state(catalog: SessionCatalog) -> Dict[str, str]:
    groups = {g.id: g.name for g in asyncio.run(catalog.list_groups())}
    return {m.identity: groups[m.group_id] for m in asyncio.run(catalog.list_memberships())}


def test_three_documents_into_two_groups(catalog: SessionCatalog) -> None:
    model = FakeModel(grouping_handler(TOPICS.get))
    notifier = RecordingNotifier()

    report = asyncio.run(_pipeline(catalog, FakeSource(PAGES), model, notifier).run())

    classify_calls = model.calls_for("classify")
    assert len(classify_calls) == 1
    assert sorted(offered_identities(classify_calls[0]["user_prompt"])) == sorted(PAGES)
    assert _state(catalog) == TOPICS
    assert len(asyncio.run(catalog.list_groups())) == 2
    assert report.classification == "ok"
    assert notifier.completed_counts == [3]


def test_failed_fetch_is_rejected_and_not_classified(catalog: SessionCatalog) -> None:
    model = FakeModel(grouping_handler(TOPICS.get))
    source = FakeSource(PAGES, hang=["https://lisbon.example/"])

    report = asyncio.run(_pipeline(catalog, source, model).run())

    [rejection] = asyncio.run(catalog.list_rejections())
    assert rejection.identity == "https://lisbon.example/"
    assert rejection.reason == "retrieve_timeout"
    assert report.rejected == 1
    assert report.collected == 2
    [classify_call] = model.calls_for("classify")
    assert sorted(offered_identities(classify_call["user_prompt"])) == ["https://bread.example/", "https://pasta.example/"]
    assert set(_state(catalog)) == {"https://bread.example/", "https://pasta.example/"}


def test_zero_budget_skips_classifier_and_keeps_history(catalog: SessionCatalog) -> None:
    async def seed():
        async with catalog.transaction() as tx:
            group_id, _ = await tx.resolve_group("Reading")
            await tx.upsert_membership(Membership("https://old.example/", group_id, "Old", "old summary"))

    asyncio.run(seed())
    before = asyncio.run(catalog.list_memberships())
    model = FakeModel(grouping_handler(TOPICS.get))

    report = asyncio.run(_pipeline(catalog, FakeSource(PAGES), model, classify_budget=0).run())

    assert model.calls_for("classify") == []
    assert report.classification == "skipped"
    assert asyncio.run(catalog.list_memberships()) == before


def test_zero_budget_with_empty_history_is_not_an_error(catalog: SessionCatalog) -> None:
    notifier = RecordingNotifier()

    asyncio.run(_pipeline(catalog, FakeSource(PAGES), FakeModel(grouping_handler(TOPICS.get)), notifier, classify_budget=0).run())

    assert asyncio.run(catalog.list_memberships()) == []
    assert notifier.completed_counts == [0]


def test_rerun_without_new_sources_converges(catalog: SessionCatalog) -> None:
    model = FakeModel(grouping_handler(TOPICS.get))
    asyncio.run(_pipeline(catalog, FakeSource(PAGES), model).run())
    groups = asyncio.run(catalog.list_groups())
    state = _state(catalog)

    asyncio.run(_pipeline(catalog, FakeSource(PAGES), model).run())
    asyncio.run(_pipeline(catalog, FakeSource({}), model).run())

    assert asyncio.run(catalog.list_groups()) == groups
    assert _state(catalog) == state
    assert len(model.calls_for("classify")) == 1


def test_history_section_is_offered_alongside_new_documents(catalog: SessionCatalog) -> None:
    model = FakeModel(grouping_handler(TOPICS.get))
    first = {k: v for k, v in PAGES.items() if k != "https://lisbon.example/"}
    asyncio.run(_pipeline(catalog, FakeSource(first), model).run())

    asyncio.run(_pipeline(catalog, FakeSource(PAGES), model).run())

    second_call = model.calls_for("classify")[-1]["user_prompt"]
    assert "EXISTING SESSIONS" in second_call
    assert "group_name: Cooking" in second_call
    assert sorted(offered_identities(second_call)) == sorted(PAGES)
    assert _state(catalog) == TOPICS


def test_malformed_twice_leaves_catalog_untouched(catalog: SessionCatalog) -> None:
    def handler(kwargs: Dict[str, Any]) -> str:
        return "[]" if kwargs["call_context"].startswith("lite") else "I could not decide."

    model = FakeModel(handler)
    report = asyncio.run(_pipeline(catalog, FakeSource(PAGES), model).run())

    assert report.classification == "fallback"
    assert model.contexts().count("classify-repair") == 1
    assert asyncio.run(catalog.list_memberships()) == []
    assert asyncio.run(catalog.list_groups()) == []


def test_excluded_and_non_web_sources_are_skipped(catalog: SessionCatalog) -> None:
    asyncio.run(catalog.add_exclusion("lisbon.example"))
    pages = dict(PAGES)
    pages["chrome://settings"] = ("Settings", "toggles")
    source = FakeSource(pages)
    model = FakeModel(grouping_handler(TOPICS.get))

    report = asyncio.run(_pipeline(catalog, source, model).run())

    assert report.sources == 4
    assert report.eligible == 2
    assert sorted(source.retrieved) == ["https://bread.example/", "https://pasta.example/"]
    assert "https://lisbon.example/" not in _state(catalog)


def test_lite_summaries_replace_raw_bodies_in_the_request(catalog: SessionCatalog) -> None:
    def handler(kwargs: Dict[str, Any]) -> str:
        if kwargs["call_context"].startswith("lite"):
            return json.dumps([{"identity": "https://bread.example/", "summary": "LITE-SUMMARY"}])
        return grouping_handler(TOPICS.get)(kwargs)

    model = FakeModel(handler)
    asyncio.run(_pipeline(catalog, FakeSource(PAGES), model).run())

    prompt = model.calls_for("classify")[0]["user_prompt"]
    assert "LITE-SUMMARY" in prompt
    assert "flour water salt starter" not in prompt
    assert "eggs flour rolling pin" in prompt


def test_source_enumeration_failure_is_fatal(catalog: SessionCatalog) -> None:
    notifier = RecordingNotifier()
    source = FakeSource(PAGES, list_error=RuntimeError("browser went away"))

    with pytest.raises(PipelineError):
        asyncio.run(_pipeline(catalog, source, FakeModel([]), notifier).run())
    assert len(notifier.failures) == 1
    assert notifier.completed_counts == []


def test_search_suggests_the_matching_session(catalog: SessionCatalog) -> None:
    asyncio.run(_pipeline(catalog, FakeSource(PAGES), FakeModel(grouping_handler(TOPICS.get))).run())

    def ranker(kwargs: Dict[str, Any]) -> str:
        return json.dumps(
            [
                {"identity": "https://bread.example/", "score": 0.9},
                {"identity": "https://pasta.example/", "score": 0.7},
                {"identity": "https://lisbon.example/", "score": 0.1},
            ]
        )

    notifier = RecordingNotifier()
    result = asyncio.run(_pipeline(catalog, FakeSource({}), FakeModel(ranker), notifier).search("flour"))

    assert [hit.identity for hit in result.hits][:2] == ["https://bread.example/", "https://pasta.example/"]
    assert result.match is not None and result.match.group_name == "Cooking"
    assert notifier.searches == [result]


def _request_units(call: Dict[str, Any]) -> int:
    counter = WordCounter()
    return counter.count(call["system_prompt"]) + counter.count(call["user_prompt"])


@pytest.mark.parametrize("headroom", [None, 12, 30, 200])
def test_classification_request_stays_within_budget(catalog: SessionCatalog, headroom) -> None:
    model = FakeModel(grouping_handler(TOPICS.get))
    pipeline = _pipeline(catalog, FakeSource(PAGES), model)
    overhead = pipeline.classifier.request_overhead(WordCounter(), len(PAGES))
    budget = 60 if headroom is None else overhead + headroom
    pipeline.config.classify_budget = budget

    asyncio.run(pipeline.run())

    classify_calls = model.calls_for("classify")
    for call in classify_calls:
        assert _request_units(call) <= budget
    if headroom == 200:
        assert len(classify_calls) == 1
        assert sorted(offered_identities(classify_calls[0]["user_prompt"])) == sorted(PAGES)


def test_small_budget_skips_instead_of_overflowing(catalog: SessionCatalog) -> None:
    model = FakeModel(grouping_handler(TOPICS.get))

    report = asyncio.run(_pipeline(catalog, FakeSource(PAGES), model, classify_budget=60).run())

    assert model.calls_for("classify") == []
    assert report.classification == "skipped"


def test_reconcile_failure_is_reported_as_pipeline_failure(catalog: SessionCatalog, monkeypatch: pytest.MonkeyPatch) -> None:
    notifier = RecordingNotifier()
    pipeline = _pipeline(catalog, FakeSource(PAGES), FakeModel(grouping_handler(TOPICS.get)), notifier)

    async def locked(*args: Any, **kwargs: Any):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(pipeline.reconciler, "reconcile", locked)

    with pytest.raises(PipelineError, match="database is locked"):
        asyncio.run(pipeline.run())
    assert notifier.failures == ["OperationalError: database is locked"]
    assert notifier.completed_counts == []


def test_catalog_failure_before_collection_is_reported(catalog: SessionCatalog, monkeypatch: pytest.MonkeyPatch) -> None:
    notifier = RecordingNotifier()
    source = FakeSource(PAGES)
    pipeline = _pipeline(catalog, source, FakeModel([]), notifier)

    async def unreadable() -> List[str]:
        raise sqlite3.DatabaseError("file is not a database")

    monkeypatch.setattr(catalog, "load_exclusions", unreadable)

    with pytest.raises(PipelineError):
        asyncio.run(pipeline.run())
    assert len(notifier.failures) == 1
    assert source.retrieved == []


def test_skipped_run_purges_newly_excluded_history(catalog: SessionCatalog) -> None:
    async def seed():
        async with catalog.transaction() as tx:
            group_id, _ = await tx.resolve_group("Banking")
            await tx.upsert_membership(Membership("https://bank.example/statements", group_id, "Statements", "money"))
            keep_id, _ = await tx.resolve_group("Reading")
            await tx.upsert_membership(Membership("https://old.example/", keep_id, "Old", "old summary"))
        await catalog.add_exclusion("bank.example")

    asyncio.run(seed())
    model = FakeModel(grouping_handler(TOPICS.get))

    report = asyncio.run(_pipeline(catalog, FakeSource(PAGES), model, classify_budget=0).run())

    assert report.classification == "skipped"
    assert _state(catalog) == {"https://old.example/": "Reading"}
    assert [g.name for g in asyncio.run(catalog.list_groups())] == ["Reading"]
    assert report.reconcile.deleted == 1


def test_fallback_run_replaces_stored_placeholder_title(catalog: SessionCatalog) -> None:
    async def seed():
        async with catalog.transaction() as tx:
            group_id, _ = await tx.resolve_group("Cooking")
            await tx.upsert_membership(Membership("https://bread.example/", group_id, "Untitled", "bread notes"))

    asyncio.run(seed())

    def handler(kwargs: Dict[str, Any]) -> str:
        return "[]" if kwargs["call_context"].startswith("lite") else "I could not decide."

    report = asyncio.run(_pipeline(catalog, FakeSource(PAGES), FakeModel(handler)).run())

    assert report.classification == "fallback"
    [membership] = asyncio.run(catalog.list_memberships())
    assert membership.title == "Sourdough basics"
    assert membership.summary == "bread notes"
    assert _state(catalog) == {"https://bread.example/": "Cooking"}
