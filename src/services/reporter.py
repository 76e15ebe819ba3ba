"""
Status reporter
Single funnel for user-facing errors and quota threshold notifications
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from errors import ConnectionFailure, DiscoveryFailure, is_server_error
from telemetry.models import QuotaLevel, QuotaSnapshot, DisplaySettings, quota_level

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """One user-facing message"""
    level: str
    kind: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    guidance: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level': self.level,
            'kind': self.kind,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'guidance': list(self.guidance),
            'details': dict(self.details),
        }


class StatusReporter:
    """Collects notifications for the presentation collaborator"""

    def __init__(self, max_notifications: int = 50):
        self.notifications = deque(maxlen=max_notifications)
        self.last_error: Optional[str] = None
        self.has_successful_sync = False
        self._reported_errors: Set[Tuple[str, str]] = set()
        self._notified_thresholds: Set[str] = set()

    def get_notifications(self) -> List[Notification]:
        return list(self.notifications)

    def _add(self, notification: Notification):
        self.notifications.append(notification)
        log = logger.warning if notification.level in ('warning', 'error') else logger.info
        log(f"[NOTIFY] {notification.kind}: {notification.message}")

    # ================== ERRORS ==================

    def report_error(self, error: Exception, diagnostics=None, guidance: Optional[List[str]] = None) -> bool:
        """
        Surface an error once per (type, message) until a snapshot clears it.
        Connection failures are hidden once a sync has succeeded this session.
        Returns True when a notification was added.
        """
        self.last_error = str(error)

        if isinstance(error, ConnectionFailure) and self.has_successful_sync:
            logger.info(f"[NOTIFY] Suppressing connection failure after successful sync: {error}")
            return False

        key = (type(error).__name__, str(error))
        if key in self._reported_errors:
            logger.debug(f"[NOTIFY] Already reported: {key[0]}: {key[1]}")
            return False
        self._reported_errors.add(key)

        if isinstance(error, DiscoveryFailure):
            diagnostics = diagnostics or error.diagnostics
            guidance = guidance or error.guidance
            kind = 'discovery_failed'
        elif is_server_error(error):
            kind = 'server_error'
        else:
            kind = 'sync_failed'

        details = {}
        if diagnostics is not None:
            details = diagnostics.to_dict() if hasattr(diagnostics, 'to_dict') else dict(diagnostics)

        self._add(Notification(level='error', kind=kind, message=str(error),
                               guidance=list(guidance or []), details=details))
        return True

    # ================== SNAPSHOTS ==================

    def on_snapshot(self, snapshot: QuotaSnapshot, settings: DisplaySettings):
        """Clear error state on a live snapshot and check quota thresholds"""
        # Cached snapshots published while offline leave the error state alone
        if snapshot.connected and snapshot.source == 'local':
            self.has_successful_sync = True
            self.last_error = None
            self._reported_errors.clear()
        self.check_thresholds(snapshot, settings)

    def check_thresholds(self, snapshot: QuotaSnapshot, settings: DisplaySettings):
        """One warning and one critical notification per group (or model) until it recovers"""
        if not settings.notification_enabled:
            return

        if settings.grouping_enabled and snapshot.groups:
            items = [(f"group:{g.group_id}", g.name, g.aggregate_remaining) for g in snapshot.groups]
        else:
            items = [(m.model_id, m.display_name or m.label,
                      m.remaining_percentage if m.remaining_percentage is not None else 0.0)
                     for m in snapshot.models]

        for key, name, pct in items:
            level = quota_level(pct, settings.warning_threshold, settings.critical_threshold)

            if level == QuotaLevel.NORMAL:
                self._notified_thresholds.discard(f"{key}-warning")
                self._notified_thresholds.discard(f"{key}-critical")
                continue
            if level == QuotaLevel.DEPLETED:
                continue

            notify_key = f"{key}-{level.value}"
            if notify_key in self._notified_thresholds:
                continue

            if level == QuotaLevel.CRITICAL:
                self._notified_thresholds.discard(f"{key}-warning")
                self._notified_thresholds.add(notify_key)
                self._add(Notification(level='warning', kind='quota_critical',
                                       message=f"{name} is critically low: {pct:.1f}% remaining",
                                       details={'key': key, 'percentage': pct}))
            elif f"{key}-critical" not in self._notified_thresholds:
                self._notified_thresholds.add(notify_key)
                self._add(Notification(level='info', kind='quota_warning',
                                       message=f"{name} is running low: {pct:.1f}% remaining",
                                       details={'key': key, 'percentage': pct}))
