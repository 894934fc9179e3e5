from __future__ import annotations

from typing import FrozenSet, Iterable
from urllib.parse import urlsplit


def normalize_rule(rule: str) -> str:
    if not rule or not isinstance(rule, str):
        return ""
    r = rule.strip().lower()
    if r.startswith("http://") or r.startswith("https://"):
        r = urlsplit(r).hostname or ""
    if r.startswith("*."):
        r = r[2:]
    return r.rstrip("/")


def host_of(identity: str) -> str:
    if "://" not in identity:
        return ""
    return (urlsplit(identity).hostname or "").lower()


def is_injectable(identity: str) -> bool:
    return identity.startswith("http://") or identity.startswith("https://")


class ExclusionList:
    """Immutable snapshot of excluded domains for the duration of one run."""

    def __init__(self, rules: Iterable[str] = ()) -> None:
        normalized = (normalize_rule(r) for r in rules)
        self.rules: FrozenSet[str] = frozenset(r for r in normalized if r)

    def __len__(self) -> int:
        return len(self.rules)

    def is_excluded(self, identity: str) -> bool:
        if not self.rules:
            return False
        host = host_of(identity)
        if not host:
            return False
        return any(host == rule or host.endswith("." + rule) for rule in self.rules)
