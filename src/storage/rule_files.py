import logging
import os
from typing import Any, Dict, Iterable, List, Optional

import yaml

from alerts.models import AlertRule
from detection.models import SigmaRule
from detection.rule_parser import SigmaParser
from storage.memory import InMemoryAlertRuleRepository, InMemorySigmaRuleRepository
from utils.config import expand_env_vars

logger = logging.getLogger(__name__)


def _iter_rule_files(root: str) -> Iterable[str]:
    for dirpath, _, filenames in os.walk(root):
        for filename in sorted(filenames):
            if not filename.endswith((".yml", ".yaml")):
                continue
            yield os.path.join(dirpath, filename)


class FileSigmaRuleRepository(InMemorySigmaRuleRepository):
    """
    Sigma rules read from directories of YAML files.

    Each source is ``{path, organization_id, project_id?, email_recipients?, webhook_url?}``;
    every rule under ``path`` is scoped to that organization/project.
    """

    def __init__(self, sources: List[Dict[str, Any]]):
        super().__init__()
        self.sources = list(sources or [])
        self.load_errors: List[str] = []
        self.rule_files_scanned = 0
        self.reload()

    def reload(self) -> int:
        """Rescan every source and replace the loaded rule set; rules of deleted files are dropped."""
        rules: List[SigmaRule] = []
        scanned = 0
        errors: List[str] = []

        for source in self.sources:
            root = source.get('path', '')
            organization_id = source.get('organization_id')
            if not root or not organization_id:
                errors.append(f"Sigma rule source needs 'path' and 'organization_id': {source}")
                continue
            if not os.path.exists(root):
                logger.warning(f"Sigma rules path does not exist: {root}")
                continue

            for file_path in _iter_rule_files(root):
                scanned += 1
                try:
                    with open(file_path, "r", encoding="utf-8", errors="ignore") as f:
                        result = SigmaParser.parse(f.read())
                except OSError as e:
                    errors.append(f"{file_path}: {e}")
                    continue

                if result.rule is None:
                    errors.append(f"{file_path}: {'; '.join(result.errors)}")
                    continue

                rule = result.rule
                rule.organization_id = organization_id
                rule.project_id = source.get('project_id')
                rule.email_recipients = list(source.get('email_recipients') or [])
                rule.webhook_url = source.get('webhook_url')
                rule.extra.setdefault('source_file', file_path)
                rules.append(rule)

        self.replace_all(rules)
        loaded = len(rules)
        self.load_errors = errors
        self.rule_files_scanned = scanned
        logger.info(f"Sigma rules loaded: {loaded} (scanned: {scanned}, errors: {len(errors)})")
        if errors:
            logger.warning(f"Some Sigma rules failed to load (showing first 5): {errors[:5]}")
        return loaded


class FileAlertRuleRepository(InMemoryAlertRuleRepository):
    """Threshold alert rules read from one YAML list (``alert_rules:`` key or a bare list)."""

    def __init__(self, path: Optional[str]):
        super().__init__()
        self.path = path
        self.load_errors: List[str] = []
        if path:
            self.reload()

    def reload(self) -> int:
        """Re-read the file (with ``${VAR}`` expansion) and replace the loaded rule set."""
        if not os.path.exists(self.path):
            logger.warning(f"Alert rules file does not exist: {self.path}")
            self.replace_all([])
            return 0

        with open(self.path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(expand_env_vars(f.read())) or []
        entries = doc.get('alert_rules', []) if isinstance(doc, dict) else doc

        errors: List[str] = []
        rules: List[AlertRule] = []
        for index, entry in enumerate(entries or []):
            try:
                rules.append(AlertRule.from_dict(entry))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                errors.append(f"{self.path}[{index}]: {e}")

        self.replace_all(rules)
        loaded = len(rules)
        self.load_errors = errors
        logger.info(f"Alert rules loaded: {loaded} (errors: {len(errors)})")
        return loaded
