from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from core.exclusions import ExclusionList
from core.models import Document


@dataclass
class MergeResult:
    working_set: List[Document]
    new_documents: List[Document]
    shadowed: int
    excluded: int
    excluded_history: List[str] = field(default_factory=list)
    fresh_titles: Dict[str, str] = field(default_factory=dict)


def merge_history(
    fresh: Sequence[Document],
    historical: Sequence[Document],
    exclusions: ExclusionList,
) -> MergeResult:
    """Union fresh and stored documents by identity; the stored entry always wins.

    ``new_documents`` are the fresh documents with no stored counterpart, in
    input order. ``fresh_titles`` keeps every fresh title, shadowed or not, so
    the reconciler can prefer a live page title over a stored one.
    """
    excluded = 0
    excluded_history: List[str] = []
    by_identity: Dict[str, Document] = {}
    for doc in historical:
        if exclusions.is_excluded(doc.identity):
            excluded += 1
            excluded_history.append(doc.identity)
            continue
        by_identity.setdefault(doc.identity, doc)

    historical_ids = set(by_identity)
    shadowed = 0
    new_documents: List[Document] = []
    fresh_titles: Dict[str, str] = {}
    for doc in fresh:
        if exclusions.is_excluded(doc.identity):
            excluded += 1
            continue
        if doc.identity not in fresh_titles:
            fresh_titles[doc.identity] = doc.title
        if doc.identity in by_identity:
            if doc.identity in historical_ids:
                shadowed += 1
            continue
        by_identity[doc.identity] = doc
        new_documents.append(doc)

    print(
        f"[merge] working set {len(by_identity)} ({len(new_documents)} new, "
        f"{shadowed} shadowed by history, {excluded} excluded)"
    )
    return MergeResult(
        working_set=list(by_identity.values()),
        new_documents=new_documents,
        shadowed=shadowed,
        excluded=excluded,
        excluded_history=excluded_history,
        fresh_titles=fresh_titles,
    )
