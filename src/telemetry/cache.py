"""
Engine-owned cache of the latest raw response and snapshot,
plus conversion to and from persisted quota cache records
"""

import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from storage.quota_cache import QuotaCacheRecord
from .decoder import parse_reset_time
from .models import QuotaModel, QuotaSnapshot

class TelemetryCache:
    """Holds the last raw response and the snapshot derived from it"""

    def __init__(self):
        self.raw: Optional[Any] = None
        self.snapshot: Optional[QuotaSnapshot] = None
        self.fetched_at: Optional[float] = None

    def get_latest(self) -> Optional[QuotaSnapshot]:
        return self.snapshot

    def set_latest(self, snapshot: QuotaSnapshot, raw: Optional[Any] = None):
        """Replace the snapshot wholesale; raw is only replaced when given"""
        self.snapshot = snapshot
        if raw is not None:
            self.raw = raw
            self.fetched_at = time.time()

    def has_raw(self) -> bool:
        return self.raw is not None

    def age_seconds(self) -> Optional[float]:
        if self.fetched_at is None:
            return None
        return time.time() - self.fetched_at

    def clear(self):
        self.raw = None
        self.snapshot = None
        self.fetched_at = None


def models_to_cache(models: List[QuotaModel]) -> List[Dict[str, Any]]:
    return [{
        'id': m.model_id,
        'display_name': m.label,
        'remaining_percentage': m.remaining_percentage,
        'remaining_fraction': m.remaining_fraction,
        'reset_time': m.reset_time.isoformat() if m.reset_time_valid else None,
        'is_recommended': m.is_recommended,
        'tag_title': m.tag_title,
        'supports_images': m.supports_images,
        'supported_mime_types': m.supported_mime_types,
    } for m in models]


def models_from_cache(entries: List[Dict[str, Any]], now: datetime) -> List[QuotaModel]:
    """Rebuild QuotaModels from cached entries"""
    models = []
    for entry in entries:
        fraction = entry.get('remaining_fraction')
        if fraction is None and entry.get('remaining_percentage') is not None:
            fraction = entry['remaining_percentage'] / 100

        if entry.get('reset_time'):
            reset_time, valid = parse_reset_time(entry['reset_time'], now)
        else:
            reset_time, valid = now + timedelta(hours=24), False

        models.append(QuotaModel(
            model_id=entry.get('id') or 'unknown',
            label=entry.get('display_name') or entry.get('id') or 'Unknown',
            remaining_fraction=fraction,
            reset_time=reset_time,
            reset_time_valid=valid,
            supports_images=entry.get('supports_images'),
            is_recommended=entry.get('is_recommended'),
            tag_title=entry.get('tag_title'),
            supported_mime_types=entry.get('supported_mime_types'),
        ))
    return models


def build_cache_record(source: str, account_id: str, snapshot: QuotaSnapshot) -> QuotaCacheRecord:
    """Record for a snapshot; stores every model, not just the visible ones"""
    models = snapshot.all_models or snapshot.models
    tier = snapshot.user_info.tier if snapshot.user_info else None
    return QuotaCacheRecord(
        source=source,
        account_id=account_id,
        updated_at=int(time.time() * 1000),
        models=models_to_cache(models),
        subscription_tier=tier if tier and tier != 'N/A' else None,
    )
