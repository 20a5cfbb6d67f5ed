import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from alerts.models import AlertRule, LOG_LEVELS
from detection.models import RESERVED_DETECTION_KEYS, SigmaRule

logger = logging.getLogger(__name__)

# Categories whose logs arrive under many service names (nginx, apache, unknown, ...)
GENERIC_CATEGORIES = ('webserver', 'proxy', 'firewall', 'dns', 'antivirus')

# Sigma level -> (threshold, time window in minutes)
SEVERITY_THRESHOLDS = {
    'critical': (1, 1),
    'high': (3, 5),
    'medium': (5, 10),
    'low': (10, 30),
    'informational': (20, 60),
}


@dataclass
class ConversionResult:
    success: bool
    alert_rule: Optional[AlertRule] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    conversion_notes: str = ""


class SigmaConverter:
    """
    Derives a threshold AlertRule from a Sigma rule.

    The threshold rule only counts logs by service and level; the Sigma
    detection logic itself stays with the detection engine.
    """

    @staticmethod
    def extract_service(logsource: Dict[str, Any]) -> Optional[str]:
        if logsource.get('category') in GENERIC_CATEGORIES:
            return None
        return logsource.get('service') or logsource.get('product') or None

    @staticmethod
    def extract_detection_keywords(detection: Dict[str, Any]) -> List[str]:
        keywords: List[str] = []

        def extract(value: Any) -> None:
            if isinstance(value, str):
                if value not in keywords:
                    keywords.append(value)
            elif isinstance(value, list):
                for item in value:
                    extract(item)
            elif isinstance(value, dict):
                for item in value.values():
                    extract(item)

        for key, value in detection.items():
            if key not in RESERVED_DETECTION_KEYS:
                extract(value)
        return keywords

    @staticmethod
    def detect_advanced_features(rule: SigmaRule) -> List[str]:
        features: List[str] = []

        condition = rule.condition
        condition_text = " ".join(condition) if isinstance(condition, list) else str(condition or "")
        tokens = condition_text.lower().split()
        if {'and', 'or', 'not', 'of'} & set(tokens):
            features.append('complex conditions (AND/OR/NOT)')

        detection_text = json.dumps(rule.detection, default=str)
        if any(f"|{name}" in detection_text for name in ('contains', 'startswith', 'endswith')):
            features.append('field modifiers (contains, startswith, endswith)')
        if '*' in detection_text or '?' in detection_text:
            features.append('wildcards (* and ?)')
        if '|re' in detection_text:
            features.append('regex patterns')

        return features

    @classmethod
    def convert(cls, rule: SigmaRule, organization_id: str, project_id: Optional[str] = None,
                email_recipients: Optional[List[str]] = None,
                webhook_url: Optional[str] = None) -> ConversionResult:
        warnings: List[str] = []

        mapping = SEVERITY_THRESHOLDS.get(rule.level)
        if mapping is None:
            return ConversionResult(
                success=False,
                errors=[f"Conversion failed: unsupported level {rule.level!r}"],
                conversion_notes="Conversion failed",
            )
        threshold, time_window = mapping

        service = cls.extract_service(rule.logsource)
        if service is None:
            warnings.append('No service found in logsource. Alert will apply to all services.')

        alert_rule = AlertRule(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            project_id=project_id,
            name=rule.title,
            service=service,
            # Security events can be logged at any level.
            level=list(LOG_LEVELS),
            threshold=threshold,
            time_window=time_window,
            email_recipients=list(email_recipients or []),
            webhook_url=webhook_url,
            metadata={
                'sigma_id': rule.id,
                'sigma_title': rule.title,
                'sigma_level': rule.level,
                'sigma_status': rule.status,
                'sigma_author': rule.author,
                'sigma_description': rule.description,
                'sigma_tags': list(rule.tags),
                'sigma_references': list(rule.references),
                'mitre_tactics': list(rule.mitre_tactics),
                'mitre_techniques': list(rule.mitre_techniques),
                'detection_keywords': cls.extract_detection_keywords(rule.detection),
                'logsource': dict(rule.logsource),
            },
        )

        notes = [f"Converted Sigma rule {rule.title!r} (level: {rule.level}) "
                 f"to threshold {threshold} in {time_window} minutes."]
        features = cls.detect_advanced_features(rule)
        if features:
            notes.append(f"Advanced features detected: {', '.join(features)}")
        if warnings:
            notes.append("Notes:\n" + "\n".join(f"- {warning}" for warning in warnings))

        logger.debug(f"Converted Sigma rule {rule.id} to alert rule {alert_rule.id}")
        return ConversionResult(
            success=True,
            alert_rule=alert_rule,
            warnings=warnings,
            conversion_notes="\n".join(notes),
        )
