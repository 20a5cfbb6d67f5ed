import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from alerts.models import AlertRule
from detection.converter import SigmaConverter
from detection.models import SigmaRule
from detection.rule_parser import SigmaParser
from utils.rule_cache import RuleSetCache

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    rule: SigmaRule
    alert_rule: Optional[AlertRule] = None
    warnings: List[str] = field(default_factory=list)
    conversion_notes: str = ""


class SigmaService:
    """
    Imports and deletes Sigma rules for an organization, keeping the
    detection engine's rule-set cache in step with the repository.
    """
    def __init__(self, sigma_rules: Any, alert_rules: Any = None, cache: Optional[RuleSetCache] = None):
        self.sigma_rules = sigma_rules
        self.alert_rules = alert_rules
        self.cache = cache

    def _invalidate(self, organization_id: str) -> None:
        if self.cache is not None:
            removed = self.cache.invalidate(organization_id)
            logger.debug(f"Invalidated {removed} cached rule sets of organization {organization_id}")

    def import_rule(self, document: str, organization_id: str, project_id: Optional[str] = None,
                    email_recipients: Optional[List[str]] = None, webhook_url: Optional[str] = None,
                    create_alert_rule: bool = False) -> ImportResult:
        """
        Parse a Sigma YAML document and store it for the organization.

        Args:
            document: Sigma rule YAML
            organization_id: Owning organization
            project_id: Restrict the rule to one project (org-wide when None)
            email_recipients: Addresses notified on every match
            webhook_url: Webhook notified on every match
            create_alert_rule: Also store a derived threshold alert rule

        Returns:
            ImportResult with the stored rule and the conversion outcome

        Raises:
            RuleValidationError: the document is not a valid Sigma rule
        """
        rule = SigmaParser.parse_or_raise(document)
        rule.organization_id = organization_id
        rule.project_id = project_id
        rule.email_recipients = list(email_recipients or [])
        rule.webhook_url = webhook_url

        conversion = SigmaConverter.convert(
            rule,
            organization_id=organization_id,
            project_id=project_id,
            email_recipients=email_recipients,
            webhook_url=webhook_url,
        )
        warnings = list(conversion.warnings)

        alert_rule = None
        if create_alert_rule:
            if conversion.success and self.alert_rules is not None:
                alert_rule = self.alert_rules.save(conversion.alert_rule)
                rule.alert_rule_id = alert_rule.id
                rule.conversion_status = "success"
            else:
                warnings.extend(conversion.errors or ["No alert rule repository configured"])
                rule.conversion_status = "partial"
        else:
            rule.conversion_status = "success"

        self.sigma_rules.save(rule)
        self._invalidate(organization_id)

        logger.info(f"Imported Sigma rule {rule.title!r} ({rule.id}) for organization {organization_id}"
                    f"{' with alert rule ' + alert_rule.id if alert_rule else ''}")
        return ImportResult(
            rule=rule,
            alert_rule=alert_rule,
            warnings=warnings,
            conversion_notes=conversion.conversion_notes,
        )

    def delete_rule(self, rule_id: str, organization_id: str) -> bool:
        rule = self.sigma_rules.get(rule_id, organization_id)
        if rule is None:
            return False

        self.sigma_rules.delete(rule_id, organization_id)
        if rule.alert_rule_id and self.alert_rules is not None:
            self.alert_rules.delete(rule.alert_rule_id)
        self._invalidate(organization_id)

        logger.info(f"Deleted Sigma rule {rule_id} of organization {organization_id}")
        return True
