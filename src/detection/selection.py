from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from detection.field_matcher import FieldMatcher, coerce_str, compile_matcher

logger = logging.getLogger(__name__)


def iter_text_values(data: Any) -> List[str]:
    """Stringify every leaf value of a (nested) log record."""
    texts: List[str] = []
    stack = [data]
    while stack:
        current = stack.pop()
        if current is None:
            continue
        if isinstance(current, dict):
            stack.extend(current.values())
        elif isinstance(current, (list, tuple)):
            stack.extend(current)
        else:
            texts.append(coerce_str(current))
    return texts


class Selection:
    def matches(self, event: Dict[str, Any], event_texts: "EventTexts") -> bool:
        raise NotImplementedError


class EventTexts:
    """Lazily stringified view of a log record, shared by the keyword selections of one rule."""

    def __init__(self, event: Dict[str, Any]):
        self._event = event
        self._lowered: Tuple[str, ...] = ()
        self._raw: Tuple[str, ...] = ()
        self._built = False

    def _build(self) -> None:
        if not self._built:
            self._raw = tuple(iter_text_values(self._event))
            self._lowered = tuple(text.lower() for text in self._raw)
            self._built = True

    def contains(self, keyword: str, case_sensitive: bool = False) -> bool:
        self._build()
        if case_sensitive:
            return any(keyword in text for text in self._raw)
        needle = keyword.lower()
        return any(needle in text for text in self._lowered)


@dataclass(frozen=True)
class FieldMapSelection(Selection):
    """AND across field matchers. An empty map never matches."""
    matchers: Tuple[FieldMatcher, ...]

    def matches(self, event: Dict[str, Any], event_texts: EventTexts) -> bool:
        if not self.matchers:
            return False
        return all(matcher.matches(event) for matcher in self.matchers)


@dataclass(frozen=True)
class KeywordSelection(Selection):
    """Free-text OR search over every field of the record."""
    keywords: Tuple[str, ...]
    case_sensitive: bool = False

    def matches(self, event: Dict[str, Any], event_texts: EventTexts) -> bool:
        return any(event_texts.contains(keyword, self.case_sensitive) for keyword in self.keywords if keyword)


@dataclass(frozen=True)
class AnyOfSelection(Selection):
    """
    OR across clauses; each clause is either a field map or a keyword list.
    """
    clauses: Tuple[Selection, ...]

    def matches(self, event: Dict[str, Any], event_texts: EventTexts) -> bool:
        return any(clause.matches(event, event_texts) for clause in self.clauses)


def _compile_field_map(selection_def: Dict[str, Any], case_sensitive: bool) -> FieldMapSelection:
    matchers = tuple(
        compile_matcher(str(raw_key), raw_value, case_sensitive=case_sensitive)
        for raw_key, raw_value in selection_def.items()
    )
    return FieldMapSelection(matchers=matchers)


def compile_selection(selection_def: Any, case_sensitive: bool = False) -> Selection:
    """
    Resolve the shape of a detection block entry once.

    - mapping -> FieldMapSelection
    - list of scalars -> KeywordSelection
    - list containing mappings -> AnyOfSelection (keywords, if any, become one extra clause)
    - scalar -> single-keyword KeywordSelection
    """
    if isinstance(selection_def, dict):
        return _compile_field_map(selection_def, case_sensitive)

    if isinstance(selection_def, list):
        clauses: List[Selection] = []
        keywords: List[str] = []
        for item in selection_def:
            if isinstance(item, dict):
                clauses.append(_compile_field_map(item, case_sensitive))
            elif item is not None:
                keywords.append(coerce_str(item))

        if not clauses:
            return KeywordSelection(keywords=tuple(keywords), case_sensitive=case_sensitive)
        if keywords:
            clauses.append(KeywordSelection(keywords=tuple(keywords), case_sensitive=case_sensitive))
        if len(clauses) == 1:
            return clauses[0]
        return AnyOfSelection(clauses=tuple(clauses))

    if selection_def is None:
        return FieldMapSelection(matchers=())

    keyword = coerce_str(selection_def)
    return KeywordSelection(keywords=(keyword,) if keyword else (), case_sensitive=case_sensitive)


def match_selection(log: Dict[str, Any], selection: Any, case_sensitive: bool = False) -> bool:
    """
    Evaluate one raw selection block against a log record.

    Compiles on every call; the detection engine uses precompiled selections instead.
    """
    compiled = compile_selection(selection, case_sensitive=case_sensitive)
    return compiled.matches(log, EventTexts(log))
