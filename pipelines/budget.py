from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

from core.text import normalize_text


class UnitCounter(Protocol):
    def count(self, text: str) -> int: ...

    def truncate(self, text: str, max_units: int) -> str: ...


@dataclass
class PromptEntry:
    identity: str
    title: str
    body: str
    group_id: Optional[int] = None
    group_name: Optional[str] = None


@dataclass
class PromptSection:
    name: str
    header: str
    entries: List[PromptEntry] = field(default_factory=list)


@dataclass
class BudgetedPrompt:
    text: str
    tokens: int
    budget: int
    offered: int
    included: Dict[str, List[str]] = field(default_factory=dict)
    truncated: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    skipped_sections: List[str] = field(default_factory=list)

    @property
    def included_identities(self) -> List[str]:
        return [identity for ids in self.included.values() for identity in ids]

    @property
    def included_count(self) -> int:
        return len(self.included_identities)

    def included_in(self, section: str) -> List[str]:
        return list(self.included.get(section, []))


class RequestBudgeter:
    """Assembles section text under a hard ceiling of ``budget`` units.

    Sections are appended in order. A section header is costed before any of its
    entries; each entry's wrapper (header and footer lines) is costed before its
    body. A body that does not fit is cut to fill exactly what remains, and the
    cut block is re-measured; if it still overflows it is dropped. The first time
    anything fails to fit, or a body has to be cut, the request is closed: no
    later entry or section is appended.
    """

    ENTRY_FOOTER = "--- end document ---\n"

    def __init__(self, budget: int, counter: UnitCounter) -> None:
        self.budget = max(int(budget), 0)
        self.counter = counter

    def _entry_header(self, index: int, entry: PromptEntry) -> str:
        lines = [f"--- document {index} ---", f"identity: {entry.identity}", f"title: {entry.title or '(untitled)'}"]
        if entry.group_id is not None or entry.group_name:
            lines.append(f"group_id: {entry.group_id if entry.group_id is not None else ''}")
            lines.append(f"group_name: {entry.group_name or ''}")
        lines.append("content:")
        return "\n".join(lines) + "\n"

    def build(self, sections: Sequence[PromptSection]) -> BudgetedPrompt:
        parts: List[str] = []
        used = 0
        closed = False
        offered = sum(len(s.entries) for s in sections)
        prompt = BudgetedPrompt(text="", tokens=0, budget=self.budget, offered=offered)
        index = 0

        for section in sections:
            if not section.entries:
                continue
            if closed:
                prompt.skipped_sections.append(section.name)
                continue
            header = section.header.rstrip("\n") + "\n\n"
            header_cost = self.counter.count(header)
            if used + header_cost > self.budget:
                prompt.skipped_sections.append(section.name)
                closed = True
                continue
            parts.append(header)
            used += header_cost
            included: List[str] = []

            for entry in section.entries:
                index += 1
                wrapper_head = self._entry_header(index, entry)
                wrapper_cost = self.counter.count(wrapper_head) + self.counter.count(self.ENTRY_FOOTER)
                remaining = self.budget - used
                if wrapper_cost > remaining:
                    closed = True
                    break
                body = normalize_text(entry.body)
                body_text = body + "\n" if body else ""
                body_cost = self.counter.count(body_text)
                if wrapper_cost + body_cost <= remaining:
                    block = wrapper_head + body_text + self.ENTRY_FOOTER
                    block_cost = wrapper_cost + body_cost
                else:
                    cut = self.counter.truncate(body, remaining - wrapper_cost)
                    block = wrapper_head + (cut + "\n" if cut else "") + self.ENTRY_FOOTER
                    block_cost = self.counter.count(block)
                    closed = True
                    if block_cost > remaining:
                        prompt.dropped.append(entry.identity)
                        break
                    prompt.truncated.append(entry.identity)
                parts.append(block)
                used += block_cost
                included.append(entry.identity)
                if closed:
                    break

            if included:
                prompt.included[section.name] = included
            else:
                # Header alone carries nothing useful.
                parts.pop()
                used -= header_cost

        text = "".join(parts)
        tokens = self.counter.count(text)
        while tokens > self.budget and parts:
            self._drop_last_block(prompt, parts)
            text = "".join(parts)
            tokens = self.counter.count(text)
        prompt.text = text
        prompt.tokens = tokens
        print(
            f"[budget] {prompt.included_count}/{offered} documents in {tokens}/{self.budget} units"
            + (f"; truncated {len(prompt.truncated)}" if prompt.truncated else "")
            + (f"; dropped {len(prompt.dropped)}" if prompt.dropped else "")
        )
        return prompt

    def _drop_last_block(self, prompt: BudgetedPrompt, parts: List[str]) -> None:
        # Joining blocks can tokenize differently from measuring them apart.
        parts.pop()
        for name in reversed(list(prompt.included)):
            ids = prompt.included[name]
            if ids:
                prompt.dropped.append(ids.pop())
                if not ids:
                    del prompt.included[name]
                    if parts:
                        parts.pop()
                return
