"""
Telemetry data structures: quota models, groups and snapshots
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

class QuotaLevel(Enum):
    """Severity of a remaining-quota percentage"""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    DEPLETED = "depleted"

def quota_level(percentage: Optional[float], warning_threshold: float, critical_threshold: float) -> QuotaLevel:
    pct = percentage if percentage is not None else 0
    if pct <= 0:
        return QuotaLevel.DEPLETED
    if pct <= critical_threshold:
        return QuotaLevel.CRITICAL
    if pct <= warning_threshold:
        return QuotaLevel.WARNING
    return QuotaLevel.NORMAL

@dataclass
class QuotaModel:
    """Quota state for one model"""
    model_id: str
    label: str
    remaining_fraction: Optional[float]
    reset_time: datetime
    reset_time_valid: bool = True
    display_name: Optional[str] = None
    supports_images: Optional[bool] = None
    is_recommended: Optional[bool] = None
    tag_title: Optional[str] = None
    supported_mime_types: Optional[Dict[str, bool]] = None
    rank: Optional[int] = None

    @property
    def remaining_percentage(self) -> Optional[float]:
        if self.remaining_fraction is None:
            return None
        return self.remaining_fraction * 100

    @property
    def is_exhausted(self) -> bool:
        return self.remaining_fraction is not None and self.remaining_fraction <= 0

    def seconds_until_reset(self, now: datetime) -> float:
        return max(0.0, (self.reset_time - now).total_seconds())

@dataclass
class QuotaGroup:
    """Models sharing one quota pool"""
    group_id: str
    name: str
    members: List[QuotaModel]

    @property
    def aggregate_remaining(self) -> float:
        """Lowest remaining percentage in the group (missing counts as 0)"""
        if not self.members:
            return 0.0
        return min(m.remaining_percentage if m.remaining_percentage is not None else 0.0 for m in self.members)

    @property
    def reset_time(self) -> Optional[datetime]:
        return self.members[0].reset_time if self.members else None

    @property
    def is_exhausted(self) -> bool:
        return any(m.is_exhausted for m in self.members)

@dataclass
class PromptCredits:
    available: float
    monthly: float
    used_percentage: float
    remaining_percentage: float

@dataclass
class UserInfo:
    """Account details reported by the language server"""
    name: str
    email: str
    plan_name: str
    tier: str
    tier_id: str = "N/A"
    tier_description: str = "N/A"
    monthly_prompt_credits: float = 0
    monthly_flow_credits: float = 0
    available_prompt_credits: float = 0
    available_flow_credits: float = 0
    capabilities: Dict[str, bool] = field(default_factory=dict)

    @property
    def account_id(self) -> Optional[str]:
        """E-mail used to key the quota cache, only when it looks like a real address"""
        return self.email if self.email and '@' in self.email else None

@dataclass
class DecodedStatus:
    """Normalised language server response, before display settings are applied"""
    models: List[QuotaModel]
    user_info: Optional[UserInfo] = None
    prompt_credits: Optional[PromptCredits] = None

@dataclass
class QuotaSnapshot:
    """Latest published state"""
    timestamp: datetime
    connected: bool
    models: List[QuotaModel] = field(default_factory=list)
    all_models: List[QuotaModel] = field(default_factory=list)
    groups: Optional[List[QuotaGroup]] = None
    prompt_credits: Optional[PromptCredits] = None
    user_info: Optional[UserInfo] = None
    error: Optional[str] = None
    source: str = "local"

    def summary(self) -> str:
        """Multi-line per-model percentages for the log"""
        if not self.models:
            return "No models available"
        width = max(len(m.label) for m in self.models)
        lines = []
        for m in self.models:
            pct = f"{m.remaining_percentage:.2f}%" if m.remaining_percentage is not None else "N/A"
            lines.append(f"    {m.label.ljust(width)} : {pct}")
        return "\n".join(lines)

@dataclass
class DisplaySettings:
    """Settings consumed from the configuration collaborator"""
    visible_models: List[str] = field(default_factory=list)
    grouping_enabled: bool = True
    group_mappings: Dict[str, str] = field(default_factory=dict)
    grouping_custom_names: Dict[str, str] = field(default_factory=dict)
    model_custom_names: Dict[str, str] = field(default_factory=dict)
    warning_threshold: float = 30
    critical_threshold: float = 10
    notification_enabled: bool = True
    refresh_interval_seconds: float = 120

    def to_dict(self) -> Dict[str, Any]:
        return {
            'visible_models': list(self.visible_models),
            'grouping_enabled': self.grouping_enabled,
            'group_mappings': dict(self.group_mappings),
            'grouping_custom_names': dict(self.grouping_custom_names),
            'model_custom_names': dict(self.model_custom_names),
            'warning_threshold': self.warning_threshold,
            'critical_threshold': self.critical_threshold,
            'notification_enabled': self.notification_enabled,
            'refresh_interval_seconds': self.refresh_interval_seconds,
        }
