"""
Display settings store
Static defaults come from the config file, user changes are persisted to a YAML state file
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from telemetry.models import DisplaySettings

logger = logging.getLogger(__name__)

# Keys that can be changed at runtime and survive restarts
MUTABLE_KEYS = {
    'visible_models': list,
    'grouping_enabled': bool,
    'group_mappings': dict,
    'grouping_custom_names': dict,
    'model_custom_names': dict,
    'warning_threshold': (int, float),
    'critical_threshold': (int, float),
    'notification_enabled': bool,
}


class SettingsStore:
    """Supplies DisplaySettings and persists group mapping corrections"""

    def __init__(self, config: Dict):
        self.display_config = dict(config.get('display', {}))
        self.refresh_interval = config.get('polling', {}).get('refresh_interval_seconds', 120)
        state_file = config.get('state', {}).get('file')
        self.state_path: Optional[Path] = Path(state_file) if state_file else None

        self._state: Dict[str, Any] = {}
        self._listeners: List[Callable[[DisplaySettings], Any]] = []
        self._write_lock = asyncio.Lock()

    def load(self):
        """Read the persisted state file, if any"""
        if not self.state_path or not self.state_path.exists():
            logger.info("[SETTINGS] No saved settings state, using configured defaults")
            return

        try:
            with open(self.state_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"[SETTINGS] Failed to read settings state {self.state_path}: {e}")
            return

        self._state = {key: value for key, value in data.items() if self._valid(key, value)}
        logger.info(f"[SETTINGS] Loaded {len(self._state)} saved settings from {self.state_path}")

    @staticmethod
    def _valid(key: str, value: Any) -> bool:
        expected = MUTABLE_KEYS.get(key)
        if expected is None:
            logger.warning(f"[SETTINGS] Ignoring unknown setting: {key}")
            return False
        if not isinstance(value, expected):
            logger.warning(f"[SETTINGS] Ignoring setting {key} with invalid type {type(value).__name__}")
            return False
        return True

    def add_listener(self, callback: Callable[[DisplaySettings], Any]):
        """Called with the new settings after every persisted change"""
        self._listeners.append(callback)

    def get_settings(self) -> DisplaySettings:
        merged = {key: self.display_config[key] for key in MUTABLE_KEYS if key in self.display_config}
        merged.update(self._state)
        return DisplaySettings(
            visible_models=list(merged.get('visible_models', [])),
            grouping_enabled=merged.get('grouping_enabled', True),
            group_mappings=dict(merged.get('group_mappings', {})),
            grouping_custom_names=dict(merged.get('grouping_custom_names', {})),
            model_custom_names=dict(merged.get('model_custom_names', {})),
            warning_threshold=merged.get('warning_threshold', 30),
            critical_threshold=merged.get('critical_threshold', 10),
            notification_enabled=merged.get('notification_enabled', True),
            refresh_interval_seconds=self.refresh_interval,
        )

    async def update(self, key: str, value: Any, notify: bool = True) -> DisplaySettings:
        """Persist one setting and notify listeners"""
        if key not in MUTABLE_KEYS:
            raise KeyError(f"Unknown setting: {key}")
        if not isinstance(value, MUTABLE_KEYS[key]):
            raise ValueError(f"Invalid value for {key}: {value!r}")

        self._state[key] = value
        await self._save()
        logger.info(f"[SETTINGS] Updated {key}")

        settings = self.get_settings()
        if notify:
            for callback in self._listeners:
                try:
                    callback(settings)
                except Exception as e:
                    logger.error(f"[SETTINGS] Settings listener failed: {e}")
        return settings

    async def update_group_mappings(self, mappings: Dict[str, str]) -> DisplaySettings:
        """
        Persist corrected or automatic group mappings.
        Listeners are not notified; the snapshot being published already reflects them.
        """
        return await self.update('group_mappings', dict(mappings), notify=False)

    async def _save(self):
        if not self.state_path:
            return
        payload = yaml.safe_dump(self._state, default_flow_style=False, sort_keys=True)
        async with self._write_lock:
            await asyncio.to_thread(self._write_file, self.state_path, payload)

    @staticmethod
    def _write_file(path: Path, payload: str):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.tmp')
        tmp_path.write_text(payload, encoding='utf-8')
        tmp_path.replace(path)
