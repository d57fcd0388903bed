from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from bizledger.application.container import AppContainer, build_container
from bizledger.config import AppPaths, Preferences, SyncSettings
from bizledger.domain.models import SyncResult
from bizledger.services.sync_contracts import AuthProvider, NetworkObserver, RemoteSyncGateway
from bizledger.services.sync_orchestrator import SyncOrchestrator

log = logging.getLogger("bizledger.sync")

LAST_FULL_SYNC = "last_full_sync"
LAST_CLEANUP = "last_cleanup"


class AppInitializer:
    """Brings the app up in order: schema, first sync, sync triggers, housekeeping."""

    def __init__(
        self,
        paths: AppPaths,
        gateway: RemoteSyncGateway,
        network: NetworkObserver,
        auth: AuthProvider,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.paths = paths
        self.gateway = gateway
        self.network = network
        self.auth = auth
        self.settings = settings or SyncSettings()
        self._clock = clock
        self.preferences = Preferences(paths.preferences_path)

        self.container: Optional[AppContainer] = None
        self.orchestrator: Optional[SyncOrchestrator] = None
        self.initial_sync: Optional[SyncResult] = None

    @property
    def initialized(self) -> bool:
        return self.orchestrator is not None and self.orchestrator.running

    async def initialize(self) -> AppContainer:
        if self.initialized:
            return self.container

        # SchemaMigrationError propagates: the store must not be used.
        self.container = await asyncio.to_thread(build_container, self.paths.db_path)
        self.orchestrator = SyncOrchestrator(
            self.container.repo,
            self.gateway,
            self.network,
            self.auth,
            settings=self.settings,
            clock=self._clock,
        )

        if self.preferences.get(LAST_FULL_SYNC) is None:
            log.info("first_run_restore")
            result = await self.orchestrator.restore_if_empty()
        else:
            result = await self.orchestrator.sync_now()
        if result.success:
            self.preferences.set(LAST_FULL_SYNC, self._clock().isoformat())
        self.initial_sync = result
        log.info("initial_sync success=%s skipped=%s message=%s", result.success, result.skipped, result.message)

        self.orchestrator.start()
        await self.run_cleanup_if_due()
        return self.container

    async def run_cleanup_if_due(self) -> int:
        now = self._clock()
        last = self.preferences.get(LAST_CLEANUP)
        if last is not None:
            try:
                if now - datetime.fromisoformat(last) < self.settings.cleanup_every:
                    return 0
            except ValueError:
                log.warning("cleanup_marker_invalid value=%s", last)

        threshold = (now - self.settings.cleanup_age).date().isoformat()
        removed = await asyncio.to_thread(self.container.repo.purge_deleted_records, threshold)
        self.preferences.set(LAST_CLEANUP, now.isoformat())
        log.info("cleanup_completed removed_rows=%s older_than=%s", removed, threshold)
        return removed

    def dispose(self) -> None:
        if self.orchestrator is not None:
            self.orchestrator.dispose()

    async def reset_app(self) -> None:
        """Stop syncing and forget every sync marker, local and remote."""
        self.dispose()
        self.preferences.clear()
        await asyncio.to_thread(self.gateway.reset_sync_status)
        if self.container is not None:
            await asyncio.to_thread(self.container.repo.reset_sync_flags)
        self.orchestrator = None
        log.info("app_reset")

    async def status(self) -> dict:
        status = await self.orchestrator.get_sync_status() if self.orchestrator else {}
        status[LAST_FULL_SYNC] = self.preferences.get(LAST_FULL_SYNC)
        status[LAST_CLEANUP] = self.preferences.get(LAST_CLEANUP)
        return status
