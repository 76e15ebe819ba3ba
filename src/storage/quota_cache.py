"""
Per-account quota cache
One versioned JSON record per (source, account) so the last known quota survives restarts
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


@dataclass
class QuotaCacheRecord:
    """Persisted quota state for one account"""
    source: str
    account_id: str
    updated_at: int
    models: List[Dict[str, Any]] = field(default_factory=list)
    subscription_tier: Optional[str] = None
    version: int = CACHE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'source': self.source,
            'account_id': self.account_id,
            'updated_at': self.updated_at,
            'subscription_tier': self.subscription_tier,
            'models': self.models,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QuotaCacheRecord':
        return cls(
            source=data['source'],
            account_id=data['account_id'],
            updated_at=int(data.get('updated_at') or 0),
            models=list(data.get('models') or []),
            subscription_tier=data.get('subscription_tier'),
            version=data.get('version', CACHE_VERSION),
        )


class QuotaCache:
    """JSON files under one directory, one per (source, account)"""

    def __init__(self, config: Dict):
        self.directory = Path(config.get('directory', 'data/quota_cache'))
        self.enabled = config.get('enabled', True)

    def path_for(self, source: str, account_id: str) -> Path:
        digest = hashlib.sha256(f"{source}:{account_id.lower()}".encode('utf-8')).hexdigest()[:24]
        return self.directory / f"{source}_{digest}.json"

    async def read(self, source: str, account_id: str) -> Optional[QuotaCacheRecord]:
        """Cached record, or None when missing, unreadable or from another version"""
        if not self.enabled:
            return None
        path = self.path_for(source, account_id)
        if not path.exists():
            return None

        try:
            text = await asyncio.to_thread(path.read_text, encoding='utf-8')
            record = QuotaCacheRecord.from_dict(json.loads(text))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"[CACHE] Ignoring unreadable quota cache {path}: {e}")
            return None

        if record.version != CACHE_VERSION:
            logger.info(f"[CACHE] Ignoring quota cache version {record.version}")
            return None
        return record

    async def write(self, record: QuotaCacheRecord):
        if not self.enabled:
            return
        path = self.path_for(record.source, record.account_id)
        payload = json.dumps(record.to_dict(), indent=2)
        await asyncio.to_thread(self._write_file, path, payload)
        logger.debug(f"[CACHE] Wrote {len(record.models)} models to {path}")

    @staticmethod
    def _write_file(path: Path, payload: str):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.tmp')
        tmp_path.write_text(payload, encoding='utf-8')
        tmp_path.replace(path)
