"""Email trigger records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass
class EmailTrigger:
    id: str
    user_id: str
    patterns: tuple[str, ...]
    rule_id: str
    created_at: datetime
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "patterns": list(self.patterns),
            "rule_id": self.rule_id,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
        }
