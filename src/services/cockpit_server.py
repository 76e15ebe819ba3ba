"""
Cockpit Server - Main orchestrator for discovery, telemetry sync and the local API
"""

import asyncio
import logging
from typing import Dict, List, Optional

import uvicorn

# Local imports
from config_loader import load_config, setup_logging
from errors import ConnectionFailure, DiscoveryFailure
from language_server import LanguageServerClient
from discovery.manager import ProcessDiscovery
from storage.quota_cache import QuotaCache
from storage.settings_store import SettingsStore
from telemetry.engine import TelemetryEngine, create_offline_snapshot
from telemetry.grouping import calculate_group_mappings
from telemetry.models import DisplaySettings, QuotaSnapshot
from services.reporter import StatusReporter
from api.main_api import CockpitAPI

logger = logging.getLogger(__name__)


class CockpitServer:
    """Main server: finds the language server, keeps the engine attached to it and serves the API"""

    def __init__(self, config_path: str = "config/config.yaml", config: Optional[Dict] = None,
                 discovery: Optional[ProcessDiscovery] = None, client_factory=LanguageServerClient,
                 sleep=asyncio.sleep):
        if config is None:
            config = load_config(config_path)
            setup_logging(config)
        self.config = config

        discovery_config = self.config['discovery']
        self.boot_attempts = discovery_config.get('boot_attempts', 3)
        self.boot_backoff = discovery_config.get('boot_backoff_seconds', 2)
        self.max_attempts = discovery_config.get('max_attempts', 3)
        self.max_consecutive_failures = discovery_config.get('max_consecutive_failures', 5)

        self.settings_store = SettingsStore(self.config)
        self.quota_cache = QuotaCache(self.config['cache'])
        self.reporter = StatusReporter(self.config['api'].get('max_notifications', 50))
        self.discovery = discovery or ProcessDiscovery(discovery_config)
        self.engine = TelemetryEngine(self.config['telemetry'], self.settings_store, self.quota_cache,
                                      client_factory=client_factory, sleep=sleep)

        self.engine.add_telemetry_callback(self._on_telemetry)
        self.engine.add_malfunction_callback(self._on_malfunction)
        self.settings_store.add_listener(self._on_settings_changed)

        self.api = CockpitAPI(self, self.config)

        self.running = False
        self.tasks = []
        self.consecutive_failures = 0
        self.account_id: Optional[str] = self.config['cache'].get('account_id')
        self._sleep = sleep
        self._rediscovery_task: Optional[asyncio.Task] = None
        self._background_tasks = set()
        self._api_server: Optional[uvicorn.Server] = None

    async def start(self):
        """Discover the language server, start syncing and serve the API"""
        logger.info("Starting Quota Cockpit...")

        try:
            self.settings_store.load()
            self.running = True

            await self.boot()

            self.tasks = [asyncio.create_task(self._monitoring_service())]
            logger.info(f"Background services started ({len(self.tasks)} tasks)")

            if self.config['api'].get('enabled', True):
                await self._start_api_server()
            else:
                logger.info("Local API disabled, running headless")
                await asyncio.gather(*self.tasks)

        except Exception as e:
            logger.error(f"Server startup failed: {e}")
            await self.stop()
            raise

    async def stop(self):
        """Stop all services gracefully"""
        if not self.running and not self.tasks:
            return
        logger.info("Stopping server...")
        self.running = False

        if self._api_server:
            self._api_server.should_exit = True

        tasks = list(self.tasks)
        if self._rediscovery_task and not self._rediscovery_task.done():
            tasks.append(self._rediscovery_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks = []

        await self.engine.stop()
        logger.info("Server stopped")

    # ================== DISCOVERY ==================

    async def boot(self) -> bool:
        """Boot-time discovery with exponential backoff; falls back to an offline snapshot"""
        delay = self.boot_backoff
        for attempt in range(1, self.boot_attempts + 1):
            if await self.connect():
                return True
            if attempt < self.boot_attempts:
                logger.warning(f"[SCAN] Language server not found (boot attempt {attempt}/{self.boot_attempts}), "
                               f"retrying in {delay}s")
                await self._sleep(delay)
                delay *= 2

        await self._go_offline(self._discovery_failure())
        return False

    async def connect(self) -> bool:
        """Run one discovery and, on success, attach and start the engine"""
        credentials, diagnostics = await self.discovery.discover(self.max_attempts)
        if credentials is None:
            return False

        verified = "verified" if credentials.verified else "UNVERIFIED"
        logger.info(f"[OK] Language server found: PID {credentials.process_id}, port {credentials.listening_port} ({verified})")
        self.engine.engage(credentials, diagnostics)
        self.engine.start()
        return True

    async def rediscover(self) -> bool:
        """Drop the current connection and discover again"""
        logger.info("[SCAN] Rediscovering language server...")
        self.engine.disengage()
        if await self.connect():
            return True
        await self._go_offline(self._discovery_failure())
        return False

    def schedule_rediscovery(self) -> bool:
        """Start a rediscovery unless one is already running"""
        if self._rediscovery_task and not self._rediscovery_task.done():
            logger.debug("[SCAN] Rediscovery already in progress")
            return False
        # Runs in its own task so the engine's timer can be cancelled underneath it
        self._rediscovery_task = asyncio.create_task(self.rediscover())
        return True

    def _discovery_failure(self) -> DiscoveryFailure:
        diagnostics = self.discovery.last_diagnostics
        target = diagnostics.target_process if diagnostics else 'language server'
        platform = diagnostics.platform if diagnostics else 'unknown'
        return DiscoveryFailure(
            f"Language server process {target} not found on {platform}",
            diagnostics=diagnostics,
            guidance=self.discovery.error_guidance(),
        )

    async def _go_offline(self, error: DiscoveryFailure):
        logger.error(f"[ERROR] {error}")
        self.reporter.report_error(error)

        if await self.engine.restore_from_cache(self.account_id):
            return
        if self.engine.get_latest_snapshot() is None:
            self.engine.set_latest_snapshot(create_offline_snapshot(str(error)))

    # ================== ENGINE CALLBACKS ==================

    def _on_telemetry(self, snapshot: QuotaSnapshot):
        if snapshot.connected and snapshot.source == 'local':
            self.consecutive_failures = 0
        if snapshot.user_info and snapshot.user_info.account_id:
            self.account_id = snapshot.user_info.account_id
        self.reporter.on_snapshot(snapshot, self.settings_store.get_settings())

    def _on_malfunction(self, error: Exception):
        if isinstance(error, ConnectionFailure) and self.running:
            self.consecutive_failures += 1
            if self.consecutive_failures <= self.max_consecutive_failures:
                logger.warning(
                    f"[SCAN] Connection issue detected (attempt {self.consecutive_failures}/"
                    f"{self.max_consecutive_failures}), rediscovering..."
                )
                self.schedule_rediscovery()
                return
            logger.error(f"[ERROR] Connection failed after {self.consecutive_failures} consecutive attempts, "
                         f"stopping auto-retry")

        self.reporter.report_error(error)

    def _on_settings_changed(self, settings: DisplaySettings):
        self._spawn(self.engine.reprocess())

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ================== OPERATIONS FOR THE API ==================

    def get_snapshot(self) -> QuotaSnapshot:
        return self.engine.get_latest_snapshot() or create_offline_snapshot(self.engine.last_error)

    async def refresh(self) -> QuotaSnapshot:
        """On-demand sync; rediscovers first when no language server is attached"""
        if self.engine.client is None:
            await self.rediscover()
        else:
            await self.engine.sync_telemetry()
        return self.get_snapshot()

    async def reprocess(self) -> QuotaSnapshot:
        await self.engine.reprocess()
        return self.get_snapshot()

    async def auto_group(self) -> Dict[str, str]:
        """Recalculate automatic group mappings from the latest models and persist them"""
        snapshot = self.engine.get_latest_snapshot()
        models = snapshot.all_models if snapshot else []
        mappings = calculate_group_mappings(models)
        await self.settings_store.update('group_mappings', mappings)
        logger.info(f"[GROUP] Auto-grouped {len(mappings)} models")
        return mappings

    async def set_group_mappings(self, mappings: Dict[str, str]) -> DisplaySettings:
        return await self.settings_store.update('group_mappings', dict(mappings))

    async def set_visible_models(self, model_ids: List[str]) -> DisplaySettings:
        return await self.settings_store.update('visible_models', list(model_ids))

    def status(self) -> Dict:
        status = self.engine.status()
        status.update({
            'running': self.running,
            'consecutive_failures': self.consecutive_failures,
            'rediscovery_in_progress': bool(self._rediscovery_task and not self._rediscovery_task.done()),
            'credentials': self.engine.credentials.redacted() if self.engine.credentials else None,
            'last_error': self.reporter.last_error or status['last_error'],
        })
        return status

    # ================== BACKGROUND SERVICES ==================

    async def _monitoring_service(self):
        """Periodic health log"""
        check_interval = self.config['polling']['health_check_interval_seconds']
        logger.info(f"Monitoring service started (every {check_interval}s)")

        while self.running:
            try:
                await asyncio.sleep(check_interval)
                if not self.running:
                    break

                status = self.engine.status()
                age = status['cache_age_seconds']
                age_text = f"{age:.0f}s" if age is not None else "never"
                logger.info(
                    f"Health check: state={status['state']}, port={status['port']}, "
                    f"last sync {age_text} ago, failures={self.consecutive_failures}"
                )

                if age is not None and self.engine.current_interval and age > self.engine.current_interval * 3:
                    logger.warning(f"Quota data is stale ({age_text} old)")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Monitoring service error: {e}")

    async def _start_api_server(self):
        """Start the FastAPI server"""
        config = uvicorn.Config(
            self.api.app,
            host=self.config['api']['host'],
            port=self.config['api']['port'],
            log_level="info",
            access_log=False  # We handle our own logging
        )

        self._api_server = uvicorn.Server(config)

        logger.info(f"Starting API server on {self.config['api']['host']}:{self.config['api']['port']}")
        logger.info(f"API documentation: http://{self.config['api']['host']}:{self.config['api']['port']}/docs")

        await self._api_server.serve()
