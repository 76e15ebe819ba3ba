"""
Telemetry module for quota synchronization with the language server
"""

from .models import (QuotaLevel, QuotaModel, QuotaGroup, QuotaSnapshot, PromptCredits, UserInfo,
                     DecodedStatus, DisplaySettings, quota_level)
from .decoder import decode_user_status, parse_reset_time
from .grouping import AssemblyResult, assemble_snapshot, calculate_group_mappings, quota_signature
from .cache import TelemetryCache
from .engine import TelemetryEngine, EngineState, create_offline_snapshot

__all__ = ['QuotaLevel', 'QuotaModel', 'QuotaGroup', 'QuotaSnapshot', 'PromptCredits', 'UserInfo',
           'DecodedStatus', 'DisplaySettings', 'quota_level', 'decode_user_status', 'parse_reset_time',
           'AssemblyResult', 'assemble_snapshot', 'calculate_group_mappings', 'quota_signature',
           'TelemetryCache', 'TelemetryEngine', 'EngineState', 'create_offline_snapshot']
