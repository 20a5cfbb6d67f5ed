from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from detection.condition import ConditionExpr, compile_condition
from detection.selection import EventTexts, Selection, compile_selection

VALID_LEVELS = ("informational", "low", "medium", "high", "critical")
VALID_STATUSES = ("experimental", "test", "stable", "deprecated", "unsupported")

# Keys of a detection block that are not selections.
RESERVED_DETECTION_KEYS = ("condition", "timeframe")

ACTIVE_CONVERSION_STATUSES = ("success", "partial")


@dataclass(frozen=True)
class CompiledDetection:
    """A detection block resolved once: compiled selections plus the bound condition tree."""
    selections: Mapping[str, Selection]
    condition: ConditionExpr

    def matches(self, event: Dict[str, Any]) -> bool:
        event_texts = EventTexts(event)
        cache: Dict[str, bool] = {}

        def get_selection(name: str) -> bool:
            if name in cache:
                return cache[name]
            selection = self.selections.get(name)
            result = selection.matches(event, event_texts) if selection is not None else False
            cache[name] = result
            return result

        return self.condition.evaluate(get_selection)


def selection_names(detection: Mapping[str, Any]) -> List[str]:
    return [str(name) for name in detection.keys() if name not in RESERVED_DETECTION_KEYS]


def compile_detection(detection: Mapping[str, Any], case_sensitive: bool = False) -> CompiledDetection:
    """
    Compile a raw Sigma detection block.

    YAML may load bare keys such as ``no`` or ``1`` as bool/int; selections
    are named by the string form of their key.

    Raises:
        ConditionSyntaxError: condition is missing, malformed or references an unknown selection
    """
    selections = {
        str(key): compile_selection(value, case_sensitive=case_sensitive)
        for key, value in detection.items()
        if key not in RESERVED_DETECTION_KEYS
    }
    condition = compile_condition(detection.get("condition"), list(selections))
    return CompiledDetection(selections=selections, condition=condition)


@dataclass
class SigmaRule:
    id: str
    title: str
    detection: Dict[str, Any]
    logsource: Dict[str, Any] = field(default_factory=dict)
    level: str = "medium"
    status: str = "stable"
    description: Optional[str] = None
    author: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    falsepositives: List[str] = field(default_factory=list)
    # ATT&CK enrichment derived from tags.
    mitre_tactics: List[str] = field(default_factory=list)
    mitre_techniques: List[str] = field(default_factory=list)
    organization_id: Optional[str] = None
    project_id: Optional[str] = None
    email_recipients: List[str] = field(default_factory=list)
    webhook_url: Optional[str] = None
    enabled: bool = True
    conversion_status: str = "success"
    alert_rule_id: Optional[str] = None
    # Fields of the source document that have no dedicated attribute.
    extra: Dict[str, Any] = field(default_factory=dict)
    compiled: Optional[CompiledDetection] = field(default=None, repr=False, compare=False)

    @property
    def condition(self) -> Union[str, List[str], None]:
        return self.detection.get("condition")

    @property
    def is_active(self) -> bool:
        return self.enabled and self.conversion_status in ACTIVE_CONVERSION_STATUSES

    def compile(self) -> CompiledDetection:
        if self.compiled is None:
            self.compiled = compile_detection(self.detection)
        return self.compiled

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = dict(self.extra)
        doc.update({
            "id": self.id,
            "title": self.title,
            "level": self.level,
            "status": self.status,
            "logsource": self.logsource,
            "detection": self.detection,
        })
        for key in ("description", "author"):
            value = getattr(self, key)
            if value is not None:
                doc[key] = value
        for key in ("tags", "references", "falsepositives"):
            value = getattr(self, key)
            if value:
                doc[key] = list(value)
        return doc


@dataclass(frozen=True)
class MatchedRule:
    sigma_rule_id: str
    rule_title: str
    rule_level: str
    matched_at: datetime
    rule_tags: Tuple[str, ...] = ()


@dataclass
class DetectionResult:
    matched: bool = False
    matched_rules: List[MatchedRule] = field(default_factory=list)


@dataclass(frozen=True)
class SigmaDetectionMatch:
    log_index: int
    sigma_rule_id: str
    rule_title: str
    rule_level: str
    matched_at: datetime
