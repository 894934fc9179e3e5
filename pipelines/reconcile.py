from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from core.models import ClassificationItem, Membership, utcnow
from storage.catalog import CatalogTransaction, GroupResolution, SessionCatalog

PLACEHOLDER_TITLES = {
    "",
    "untitled",
    "(untitled)",
    "(no title)",
    "no title",
    "new tab",
    "loading",
    "loading...",
    "loading…",
}


def is_placeholder_title(title: Optional[str], identity: str = "") -> bool:
    cleaned = (title or "").strip()
    if cleaned.lower() in PLACEHOLDER_TITLES:
        return True
    return bool(identity) and cleaned == identity


def resolve_title(identity: str, fresh: Optional[str], stored: Optional[str]) -> str:
    """Pick the display title for a membership.

    Order: fresh real title, stored real title, fresh placeholder, stored
    placeholder, then the identity itself.
    """
    if not is_placeholder_title(fresh, identity):
        return (fresh or "").strip()
    if not is_placeholder_title(stored, identity):
        return (stored or "").strip()
    for candidate in (fresh, stored):
        if candidate and candidate.strip():
            return candidate.strip()
    return identity


@dataclass
class ReconcileReport:
    created: List[str] = field(default_factory=list)
    reused: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    upserted: int = 0
    deleted: int = 0
    retitled: int = 0
    orphans_removed: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "created": list(self.created),
            "reused": list(self.reused),
            "conflicts": list(self.conflicts),
            "upserted": self.upserted,
            "deleted": self.deleted,
            "retitled": self.retitled,
            "orphans_removed": self.orphans_removed,
        }


class Reconciler:
    def __init__(self, catalog: SessionCatalog) -> None:
        self.catalog = catalog

    async def _group_for(
        self,
        tx: CatalogTransaction,
        item: ClassificationItem,
        cache: Dict[str, int],
        report: ReconcileReport,
    ) -> int:
        name = item.group_name
        if name in cache:
            return cache[name]
        if item.existing_group_id is not None:
            hinted = await tx.get_group(item.existing_group_id)
            # Only trust the hint when it names the same session.
            if hinted is not None and hinted.name.strip().lower() == name.strip().lower():
                cache[name] = hinted.id
                cache[hinted.name] = hinted.id
                report.reused.append(hinted.name)
                return hinted.id
        group_id, resolution = await tx.resolve_group(name)
        if resolution is GroupResolution.CREATED:
            report.created.append(name)
        elif resolution is GroupResolution.CONFLICT_REREAD:
            report.conflicts.append(name)
        else:
            report.reused.append(name)
        cache[name] = group_id
        return group_id

    async def reconcile(
        self,
        items: Sequence[ClassificationItem],
        offered: Iterable[str],
        fresh_titles: Mapping[str, str],
        purge: Iterable[str] = (),
    ) -> ReconcileReport:
        """Apply one classification result to the catalog in a single transaction.

        Stored memberships are deleted only when their identity was offered to the
        classifier and is missing from ``items``, or when listed in ``purge``.
        Orphan groups are removed after every upsert has been issued.
        """
        report = ReconcileReport()
        offered_set = set(offered)
        results = {item.identity: item for item in items if item.identity in offered_set}
        purge_set = set(purge)

        async with self.catalog.transaction() as tx:
            stored = {m.identity: m for m in await tx.list_memberships()}
            absent = [identity for identity in stored if identity in offered_set and identity not in results]
            doomed = absent + [identity for identity in stored if identity in purge_set and identity not in absent]
            report.deleted = await tx.delete_memberships(doomed)

            cache: Dict[str, int] = {}
            stamp = utcnow().isoformat()
            for identity, item in results.items():
                if identity in purge_set:
                    continue
                group_id = await self._group_for(tx, item, cache, report)
                previous = stored.get(identity)
                await tx.upsert_membership(
                    Membership(
                        identity=identity,
                        group_id=group_id,
                        title=resolve_title(
                            identity, fresh_titles.get(identity), previous.title if previous else None
                        ),
                        summary=item.summary or (previous.summary if previous else ""),
                        updated_at=stamp,
                    )
                )
                report.upserted += 1

            report.orphans_removed = await tx.delete_orphan_groups()

        if report.conflicts:
            print(f"[reconcile] re-read {len(report.conflicts)} groups created concurrently", file=sys.stderr)
        print(
            f"[reconcile] upserted {report.upserted}, deleted {report.deleted}, "
            f"groups +{len(report.created)} / -{report.orphans_removed}"
        )
        return report

    async def tidy(self, fresh_titles: Mapping[str, str], purge: Iterable[str] = ()) -> ReconcileReport:
        """Catalog upkeep for runs that produced no classification.

        Memberships listed in ``purge`` are deleted and stored placeholder titles
        are replaced by fresh real ones. Group assignments are left alone. No
        transaction is opened when there is nothing to change.
        """
        report = ReconcileReport()
        purge_set = set(purge)
        stored = {m.identity: m for m in await self.catalog.list_memberships()}
        doomed = [identity for identity in stored if identity in purge_set]
        retitle: Dict[str, str] = {}
        for identity, membership in stored.items():
            if identity in purge_set or identity not in fresh_titles:
                continue
            fresh = fresh_titles[identity]
            if is_placeholder_title(membership.title, identity) and not is_placeholder_title(fresh, identity):
                retitle[identity] = resolve_title(identity, fresh, membership.title)
        if not doomed and not retitle:
            return report

        async with self.catalog.transaction() as tx:
            report.deleted = await tx.delete_memberships(doomed)
            for identity, title in retitle.items():
                report.retitled += await tx.update_title(identity, title)
            report.orphans_removed = await tx.delete_orphan_groups()

        print(
            f"[reconcile] purged {report.deleted}, retitled {report.retitled}, "
            f"groups -{report.orphans_removed}"
        )
        return report
