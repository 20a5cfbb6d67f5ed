from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

LOG_LEVELS = ("debug", "info", "warn", "error", "critical")


@dataclass
class AlertRule:
    id: str
    organization_id: str
    name: str
    level: List[str]
    threshold: int
    time_window: int  # minutes
    project_id: Optional[str] = None
    service: Optional[str] = None
    enabled: bool = True
    email_recipients: List[str] = field(default_factory=list)
    webhook_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertRule":
        level = data.get("level") or []
        if isinstance(level, str):
            level = [level]
        return cls(
            id=str(data["id"]),
            organization_id=str(data["organization_id"]),
            name=str(data.get("name") or data["id"]),
            level=[str(item).lower() for item in level],
            threshold=int(data.get("threshold", 1)),
            time_window=int(data.get("time_window", data.get("timeWindow", 5))),
            project_id=data.get("project_id"),
            service=data.get("service") or None,
            enabled=bool(data.get("enabled", True)),
            email_recipients=list(data.get("email_recipients") or []),
            webhook_url=data.get("webhook_url") or None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class AlertHistoryEntry:
    id: str
    rule_id: str
    triggered_at: datetime
    log_count: int
    notified: bool = False
    error: Optional[str] = None
