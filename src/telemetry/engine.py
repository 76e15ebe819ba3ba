"""
Telemetry synchronization engine
Readiness gate, generation-checked init sync, periodic sync, decode and publication of quota snapshots
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import (ConnectionFailure, EndpointNotFound, ReadinessTimeout, ServiceNotInitializedError,
                    TelemetryError, is_server_error)
from language_server import (GET_UNLEASH_DATA, GET_USER_STATUS, GET_USER_STATUS_SEAT, USER_STATUS_PAYLOAD,
                             WARMUP_ENDPOINT, LanguageServerClient, LanguageServerResponse)
from .cache import TelemetryCache, build_cache_record, models_from_cache
from .decoder import decode_user_status
from .grouping import AssemblyResult, assemble_snapshot
from .models import DecodedStatus, QuotaSnapshot

logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Engine lifecycle"""
    IDLE = "idle"
    CONNECTED = "connected"
    WAITING_FOR_READY = "waiting_for_ready"
    SYNCING_INIT = "syncing_init"
    STEADY = "steady"


def create_offline_snapshot(error: Optional[str] = None) -> QuotaSnapshot:
    """Snapshot published while no language server is connected"""
    return QuotaSnapshot(timestamp=datetime.now(timezone.utc), connected=False, error=error)


class TelemetryEngine:
    """Keeps the quota snapshot in sync with one language server instance"""

    def __init__(self, config: Dict, settings_store, quota_cache=None, client_factory=LanguageServerClient,
                 sleep=asyncio.sleep, clock: Optional[Callable[[], datetime]] = None,
                 monotonic: Callable[[], float] = time.monotonic):
        self.config = config
        self.settings_store = settings_store
        self.quota_cache = quota_cache

        endpoints = config.get('endpoints', {})
        self.primary_path = endpoints.get('primary', GET_USER_STATUS)
        self.fallback_path = endpoints.get('fallback', GET_USER_STATUS_SEAT)
        self.readiness_path = endpoints.get('readiness', GET_UNLEASH_DATA)
        self.warmup_path = endpoints.get('warmup', WARMUP_ENDPOINT)

        self.request_timeout = config.get('request_timeout_seconds', 10)
        self.readiness_timeout = config.get('readiness_timeout_seconds', 10)
        self.readiness_interval = config.get('readiness_poll_interval_seconds', 0.5)
        self.readiness_probe_timeout = config.get('readiness_probe_timeout_seconds', 2)
        self.init_max_retries = config.get('init_max_retries', 3)
        self.init_retry_base = config.get('init_retry_base_seconds', 1)
        self.warmup_delays = list(config.get('warmup_delays_seconds', [0.5, 1, 2]))

        self._client_factory = client_factory
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic

        # Connection state
        self.state = EngineState.IDLE
        self.credentials = None
        self.diagnostics = None
        self.client: Optional[LanguageServerClient] = None

        # Sync state
        self.cache = TelemetryCache()
        self.generation = 0
        self.has_successful_sync = False
        self.current_interval: float = 0
        self.last_error: Optional[str] = None

        self._telemetry_callbacks: List[Callable[[QuotaSnapshot], Any]] = []
        self._malfunction_callbacks: List[Callable[[Exception], Any]] = []
        self._pulse_task: Optional[asyncio.Task] = None
        self._init_task: Optional[asyncio.Task] = None
        self._background_tasks = set()

    # ================== CALLBACKS ==================

    def add_telemetry_callback(self, callback: Callable[[QuotaSnapshot], Any]):
        """Called with every published snapshot"""
        self._telemetry_callbacks.append(callback)

    def add_malfunction_callback(self, callback: Callable[[Exception], Any]):
        """Called with every sync failure that is not retried locally"""
        self._malfunction_callbacks.append(callback)

    # ================== LIFECYCLE ==================

    def engage(self, credentials, diagnostics=None):
        """Point the engine at a discovered language server"""
        if self.client is not None:
            self._spawn(self.client.close())
        self.credentials = credentials
        self.diagnostics = diagnostics
        self.client = self._client_factory(credentials.listening_port, credentials.auth_token, self.request_timeout)
        self.state = EngineState.CONNECTED
        logger.info(f"[SYNC] Engine engaged on port {credentials.listening_port} (PID {credentials.process_id})")

    def start(self, interval_seconds: Optional[float] = None) -> int:
        """
        Start the init sync chain and the periodic timer.
        Returns the new generation; older init chains become inert.
        """
        self.shutdown()
        interval = interval_seconds or self.settings_store.get_settings().refresh_interval_seconds
        self.current_interval = interval

        self.generation += 1
        generation = self.generation
        logger.info(f"[SYNC] Engine started (generation {generation}, every {interval}s)")

        self._init_task = asyncio.create_task(self._init_sequence(generation))
        self._pulse_task = asyncio.create_task(self._pulse_loop(interval))
        return generation

    def shutdown(self):
        """Stop the periodic timer"""
        if self._pulse_task and not self._pulse_task.done():
            self._pulse_task.cancel()
        self._pulse_task = None

    def cancel_init_retry(self):
        """Invalidate any pending init retry chain"""
        self.generation += 1

    def disengage(self):
        """Return to IDLE ahead of a rediscovery"""
        self.shutdown()
        self.cancel_init_retry()
        self.state = EngineState.IDLE

    async def stop(self):
        """Stop everything and release the HTTP session"""
        self.disengage()
        if self._init_task and not self._init_task.done():
            self._init_task.cancel()
            await asyncio.gather(self._init_task, return_exceptions=True)
        await self.flush_background_tasks()
        if self.client:
            await self.client.close()
        logger.info("[SYNC] Engine stopped")

    async def flush_background_tasks(self):
        """Wait for fire-and-forget persistence to finish"""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ================== READINESS + INIT ==================

    async def _init_sequence(self, generation: int):
        self.state = EngineState.WAITING_FOR_READY
        await self.wait_until_ready()
        if generation != self.generation:
            logger.info(f"[SYNC] Generation {generation} superseded during readiness wait")
            return

        self.state = EngineState.SYNCING_INIT
        await self._init_with_retry(generation)
        if generation == self.generation:
            self.state = EngineState.STEADY

    async def wait_until_ready(self) -> bool:
        """
        Poll the readiness endpoint until any non-404 answer arrives.
        Best effort: returns False after the window expires and the caller proceeds anyway.
        """
        if self.client is None:
            return False

        polls = max(1, int(self.readiness_timeout / self.readiness_interval)) if self.readiness_interval else 1
        deadline = self._monotonic() + self.readiness_timeout
        for poll in range(polls):
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                break
            # Slow probes eat into the window instead of extending it
            status = await self.client.probe(self.readiness_path,
                                             timeout_seconds=min(self.readiness_probe_timeout, remaining))
            if status is not None and status != 404:
                logger.info(f"[SYNC] Language server ready (status {status}) after {poll + 1} polls")
                return True
            if poll < polls - 1:
                remaining = deadline - self._monotonic()
                if remaining <= 0:
                    break
                await self._sleep(min(self.readiness_interval, remaining))

        logger.warning(f"[SYNC] {ReadinessTimeout(f'Language server not ready after {self.readiness_timeout}s')}, proceeding anyway")
        return False

    async def _init_with_retry(self, generation: int) -> bool:
        """First sync after connecting: exponential backoff on connection failures, generation-checked"""
        for attempt in range(self.init_max_retries + 1):
            if generation != self.generation:
                logger.info("[SYNC] Init sync retry canceled")
                return False

            try:
                raw, result = await self._fetch_and_assemble()
            except ConnectionFailure as e:
                if generation != self.generation:
                    logger.info("[SYNC] Init sync retry canceled after error")
                    return False
                if attempt < self.init_max_retries:
                    delay = self.init_retry_base * (2 ** attempt)
                    logger.warning(
                        f"[SYNC] Init sync failed (endpoint={self.primary_path}), "
                        f"retry {attempt + 1}/{self.init_max_retries} in {delay}s: {e}"
                    )
                    await self._sleep(delay)
                    continue
                logger.error(f"[SYNC] Init sync failed after {self.init_max_retries} retries: {e}")
                self._report_malfunction(e)
                return False
            except TelemetryError as e:
                if generation != self.generation:
                    return False
                logger.error(f"[SYNC] Init sync failed: {e}")
                self._report_malfunction(e)
                return False

            if generation != self.generation:
                logger.info(f"[SYNC] Discarding init sync result from superseded generation {generation}")
                return False

            self._commit(raw, result)
            return True

        return False

    # ================== PERIODIC SYNC ==================

    async def _pulse_loop(self, interval: float):
        """Periodic sync; failures wait for the next tick"""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sync_telemetry()
            except Exception as e:
                logger.error(f"[SYNC] Periodic sync error: {e}")

    async def sync_telemetry(self) -> Optional[QuotaSnapshot]:
        """Fetch, decode and publish once; failures go to the malfunction callbacks"""
        try:
            raw, result = await self._fetch_and_assemble()
        except TelemetryError as e:
            logger.error(f"[SYNC] Telemetry sync failed (endpoint={self.primary_path}): {e}")
            self._report_malfunction(e)
            return None
        return self._commit(raw, result)

    # ================== FETCH + DECODE ==================

    async def _post(self, path: str, payload: Dict[str, Any]) -> LanguageServerResponse:
        if self.client is None:
            raise ConnectionFailure("System not ready: engine not engaged")
        return await self.client.post(path, payload)

    async def fetch_raw(self) -> Any:
        """
        POST the user status request, retrying once on the fallback path when
        the primary path is not found. Returns the parsed JSON body.
        """
        response = await self._post(self.primary_path, USER_STATUS_PAYLOAD)
        if response.is_not_found():
            logger.warning(f"[SYNC] {self.primary_path} not found (status {response.status}), trying {self.fallback_path}")
            response = await self._post(self.fallback_path, USER_STATUS_PAYLOAD)
            if response.is_not_found():
                raise EndpointNotFound(f"User status endpoint not found on port {self.client.port}")

        body = response.body
        if not body or not body.strip():
            logger.warning("[SYNC] Received empty response from language server")
            raise ConnectionFailure("Signal corrupted: empty response from server")

        try:
            return json.loads(body)
        except ValueError as e:
            preview = body[:200] + '...' if len(body) > 200 else body
            logger.error(f"[SYNC] JSON parse failed (status {response.status}). Response preview: {preview}")
            raise ConnectionFailure(f"Signal corrupted: {e}") from e

    async def _warm_up(self):
        """Throwaway request that nudges the language server into initializing"""
        try:
            await self._post(self.warmup_path, USER_STATUS_PAYLOAD)
        except ConnectionFailure as e:
            logger.debug(f"[SYNC] Warm-up request failed: {e}")

    async def _fetch_and_assemble(self) -> Tuple[Any, AssemblyResult]:
        """Fetch and decode, with warm-up rounds while the server reports it is not initialized"""
        warmup_round = 0
        while True:
            raw = await self.fetch_raw()
            try:
                return raw, self._assemble(raw)
            except ServiceNotInitializedError as e:
                if warmup_round >= len(self.warmup_delays):
                    logger.error(f"[SYNC] Language server still not initialized after {warmup_round} warm-up rounds")
                    raise
                delay = self.warmup_delays[warmup_round]
                warmup_round += 1
                logger.warning(f"[SYNC] {e}; warming up, retry {warmup_round}/{len(self.warmup_delays)} in {delay}s")
                await self._warm_up()
                await self._sleep(delay)

    def _assemble(self, raw: Any, source: str = "local") -> AssemblyResult:
        now = self._clock()
        decoded = decode_user_status(raw, now)
        return assemble_snapshot(decoded, self.settings_store.get_settings(), now, source=source)

    # ================== PUBLICATION ==================

    def _commit(self, raw: Any, result: AssemblyResult) -> QuotaSnapshot:
        """Cache, persist and publish a fresh result"""
        self.cache.set_latest(result.snapshot, raw)
        self._persist_mappings(result)
        self._persist_quota_cache(result.snapshot)
        self._publish(result.snapshot)
        return result.snapshot

    def _publish(self, snapshot: QuotaSnapshot):
        logger.info(f"[SYNC] Quota update:\n{snapshot.summary()}")
        if snapshot.connected and snapshot.source == "local":
            # Later periodic failures are no longer surfaced to the user
            self.has_successful_sync = True
            self.last_error = None

        for callback in self._telemetry_callbacks:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"[SYNC] Telemetry callback failed: {e}")

    def _report_malfunction(self, error: Exception):
        self.last_error = str(error)
        if is_server_error(error):
            logger.warning(f"[SYNC] Language server reported an error: {error}")
        for callback in self._malfunction_callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"[SYNC] Malfunction callback failed: {e}")

    def _persist_mappings(self, result: AssemblyResult):
        if result.mapping_update is None:
            return
        self._spawn(self._save_mappings(result.mapping_update))

    async def _save_mappings(self, mappings: Dict[str, str]):
        try:
            await self.settings_store.update_group_mappings(mappings)
        except Exception as e:
            logger.warning(f"[GROUP] Failed to save updated group mappings: {e}")

    def _persist_quota_cache(self, snapshot: QuotaSnapshot):
        if self.quota_cache is None or snapshot.user_info is None:
            return
        account_id = snapshot.user_info.account_id
        if not account_id:
            return
        record = build_cache_record('local', account_id, snapshot)
        self._spawn(self._write_quota_cache(record))

    async def _write_quota_cache(self, record):
        try:
            await self.quota_cache.write(record)
        except Exception as e:
            logger.debug(f"[CACHE] Failed to write quota cache: {e}")

    # ================== CACHE ACCESS ==================

    def get_latest_snapshot(self) -> Optional[QuotaSnapshot]:
        return self.cache.get_latest()

    def set_latest_snapshot(self, snapshot: QuotaSnapshot):
        self.cache.set_latest(snapshot)

    async def reprocess(self) -> Optional[QuotaSnapshot]:
        """
        Re-derive and republish the snapshot from the cached raw response under
        current settings; falls back to a real sync when nothing is cached.
        """
        if not self.cache.has_raw():
            logger.warning("[SYNC] Cannot reprocess: no cached response, triggering sync")
            return await self.sync_telemetry()

        logger.info("[SYNC] Reprocessing cached telemetry with latest settings")
        try:
            result = self._assemble(self.cache.raw)
        except TelemetryError as e:
            self._report_malfunction(e)
            return None

        self.cache.set_latest(result.snapshot)
        self._persist_mappings(result)
        self._publish(result.snapshot)
        return result.snapshot

    async def restore_from_cache(self, account_id: Optional[str]) -> bool:
        """Publish the persisted quota record for an account, if any"""
        if not account_id or self.quota_cache is None:
            return False
        record = await self.quota_cache.read('local', account_id)
        if record is None or not record.models:
            return False

        now = self._clock()
        decoded = DecodedStatus(models=models_from_cache(record.models, now))
        result = assemble_snapshot(decoded, self.settings_store.get_settings(), now,
                                   source="cache", connected=False)
        self.cache.set_latest(result.snapshot)
        self._publish(result.snapshot)
        logger.info(f"[CACHE] Restored {len(decoded.models)} models from quota cache")
        return True

    def status(self) -> Dict[str, Any]:
        """Engine state for monitoring"""
        return {
            'state': self.state.value,
            'generation': self.generation,
            'port': self.credentials.listening_port if self.credentials else None,
            'verified': self.credentials.verified if self.credentials else None,
            'connected': self.state in (EngineState.CONNECTED, EngineState.WAITING_FOR_READY,
                                        EngineState.SYNCING_INIT, EngineState.STEADY),
            'has_successful_sync': self.has_successful_sync,
            'refresh_interval_seconds': self.current_interval,
            'cache_age_seconds': self.cache.age_seconds(),
            'last_error': self.last_error,
        }

    create_offline_snapshot = staticmethod(create_offline_snapshot)
