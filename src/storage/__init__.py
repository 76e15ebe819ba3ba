"""
Storage module for persisted quota records and display settings
"""

from .quota_cache import QuotaCache, QuotaCacheRecord, CACHE_VERSION
from .settings_store import SettingsStore, MUTABLE_KEYS

__all__ = ['QuotaCache', 'QuotaCacheRecord', 'CACHE_VERSION', 'SettingsStore', 'MUTABLE_KEYS']
