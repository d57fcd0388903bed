from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional

from bizledger.config import SyncSettings
from bizledger.domain.errors import SyncError
from bizledger.domain.models import SyncResult
from bizledger.services.sync_contracts import AuthProvider, NetworkObserver, RemoteSyncGateway, Unsubscribe

log = logging.getLogger("bizledger.sync")


class SyncState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"


class SyncHandle:
    """Owns the periodic timer and the observer subscriptions of one ``start()``."""

    def __init__(
        self,
        timer: asyncio.Task,
        unsubscribers: Iterable[Unsubscribe],
        on_dispose: Optional[Callable[[], None]] = None,
    ):
        self._timer = timer
        self._unsubscribers = list(unsubscribers)
        self._on_dispose = on_dispose
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._timer.cancel()
        for unsubscribe in self._unsubscribers:
            try:
                unsubscribe()
            except Exception:
                log.exception("sync_unsubscribe_failed")
        self._unsubscribers.clear()
        if self._on_dispose:
            self._on_dispose()


class SyncOrchestrator:
    def __init__(
        self,
        store,
        gateway: RemoteSyncGateway,
        network: NetworkObserver,
        auth: AuthProvider,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.gateway = gateway
        self.network = network
        self.auth = auth
        self.settings = settings or SyncSettings()
        self._clock = clock

        self.state = SyncState.IDLE
        self.last_sync_attempt: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handle: Optional[SyncHandle] = None
        self._was_online = False
        self._user: Optional[str] = None
        # Settle delays are cancelled on dispose; attempts are not.
        self._settling: set[asyncio.Task] = set()
        self._attempts: set[asyncio.Task] = set()

    @property
    def is_syncing(self) -> bool:
        return self.state is SyncState.SYNCING

    @property
    def running(self) -> bool:
        return self._handle is not None and not self._handle.disposed

    # ---------- lifecycle ----------
    def start(self) -> SyncHandle:
        """Arm triggers. Must be called from inside the running event loop."""
        if self.running:
            return self._handle

        self._loop = asyncio.get_running_loop()
        self._was_online = bool(self.network.is_online())
        self._user = self.auth.current_user()

        timer = self._loop.create_task(self._periodic())
        unsubscribers = [
            self.network.subscribe(self._on_network_change),
            self.auth.subscribe(self._on_auth_change),
        ]
        self._handle = SyncHandle(timer, unsubscribers, on_dispose=self._cancel_settling)
        log.info(
            "sync_orchestrator_started interval=%ss debounce=%ss online=%s",
            self.settings.sync_interval,
            self.settings.debounce_window,
            self._was_online,
        )
        return self._handle

    def dispose(self) -> None:
        if self._handle is None or self._handle.disposed:
            return
        self._handle.dispose()
        log.info("sync_orchestrator_disposed")

    def _cancel_settling(self) -> None:
        for task in list(self._settling):
            task.cancel()
        self._settling.clear()

    async def wait_for_pending(self) -> None:
        """Wait until scheduled settle delays and background attempts have finished."""
        while self._settling or self._attempts:
            await asyncio.gather(*self._settling, *self._attempts, return_exceptions=True)

    # ---------- triggers ----------
    async def _periodic(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sync_interval)
            self._spawn_attempt("periodic")

    def _on_network_change(self, online: bool) -> None:
        self._dispatch(self._handle_network, bool(online))

    def _on_auth_change(self, user: Optional[str]) -> None:
        self._dispatch(self._handle_auth, user)

    def _dispatch(self, fn, arg) -> None:
        # Observers may call back from their own threads.
        if self._loop is None or self._loop.is_closed():
            log.warning("sync_event_dropped reason=no_event_loop")
            return
        self._loop.call_soon_threadsafe(fn, arg)

    def _handle_network(self, online: bool) -> None:
        was_online = self._was_online
        self._was_online = online
        if online and not was_online:
            log.info("connectivity_restored")
            self._schedule("connectivity", self.settings.connectivity_settle_delay)

    def _handle_auth(self, user: Optional[str]) -> None:
        previous = self._user
        self._user = user
        if user and user != previous:
            log.info("user_logged_in user=%s", user)
            self._schedule("login", self.settings.login_settle_delay)

    def _schedule(self, trigger: str, delay: float) -> None:
        if not self.running:
            return
        task = self._loop.create_task(self._settle_then_sync(trigger, delay))
        self._settling.add(task)
        task.add_done_callback(self._settling.discard)

    async def _settle_then_sync(self, trigger: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._spawn_attempt(trigger)

    def _spawn_attempt(self, trigger: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._attempt(trigger, self.gateway.sync_all_data, debounce=True)
        )
        self._attempts.add(task)
        task.add_done_callback(self._attempts.discard)

    # ---------- public operations ----------
    async def sync_now(self) -> SyncResult:
        return await self._attempt("manual", self.gateway.sync_all_data, debounce=False)

    async def force_upload_all(self) -> SyncResult:
        return await self._attempt("force_upload", self.gateway.force_upload_all_data, debounce=False)

    async def restore_if_empty(self) -> SyncResult:
        return await self._attempt("restore", self.gateway.restore_if_empty, debounce=False)

    async def get_sync_status(self) -> dict:
        try:
            remote = dict(await asyncio.to_thread(self.gateway.get_sync_status) or {})
        except Exception as e:
            log.warning("sync_status_unavailable error=%s", e)
            remote = {"error": str(e)}
        local = await asyncio.to_thread(self.store.sync_status)
        return {
            **remote,
            "local": local,
            "state": self.state.value,
            "is_syncing": self.is_syncing,
            "last_sync_attempt": self.last_sync_attempt.isoformat() if self.last_sync_attempt else None,
            "last_result": self.last_result.message if self.last_result else None,
        }

    # ---------- attempt ----------
    def _guard_failure(self) -> Optional[str]:
        if not self.network.is_online():
            return "No internet connection"
        if not self.auth.current_user():
            return "User not authenticated"
        if not self.gateway.can_sync():
            return "Remote sync unavailable"
        return None

    async def _attempt(self, trigger: str, call: Callable[[], object], debounce: bool) -> SyncResult:
        if self.is_syncing:
            log.info("sync_skipped trigger=%s reason=in_progress", trigger, extra={"trigger": trigger, "outcome": "skipped"})
            return SyncResult.skip("Sync already in progress")

        now = self._clock()
        if debounce and self.last_sync_attempt is not None:
            if now - self.last_sync_attempt < timedelta(seconds=self.settings.debounce_window):
                log.info(
                    "sync_skipped trigger=%s reason=debounced last_attempt=%s",
                    trigger,
                    self.last_sync_attempt.isoformat(),
                    extra={"trigger": trigger, "outcome": "skipped"},
                )
                return SyncResult.skip("Synced recently")

        # Claimed before the guard runs so a second trigger sees the attempt in flight.
        self.state = SyncState.SYNCING
        try:
            try:
                reason = await asyncio.to_thread(self._guard_failure)
            except Exception as e:
                log.warning("sync_guard_failed trigger=%s error=%s", trigger, e, extra={"trigger": trigger, "outcome": "skipped"})
                reason = f"Pre-flight check failed: {e}"
            if reason:
                log.info("sync_skipped trigger=%s reason=%s", trigger, reason, extra={"trigger": trigger, "outcome": "skipped"})
                return SyncResult.skip(reason)

            self.last_sync_attempt = now
            log.info("sync_attempt_started trigger=%s", trigger, extra={"trigger": trigger, "outcome": "started"})
            try:
                result = SyncResult.coerce(await asyncio.to_thread(call))
                if result.success and result.transmitted:
                    marked = await asyncio.to_thread(self.store.mark_synced_many, result.transmitted)
                    log.info(
                        "sync_rows_marked trigger=%s transmitted=%s marked=%s",
                        trigger,
                        len(result.transmitted),
                        marked,
                        extra={"trigger": trigger, "outcome": "marked"},
                    )
            except SyncError as e:
                log.warning("sync_attempt_failed trigger=%s error=%s", trigger, e, extra={"trigger": trigger, "outcome": "failed"})
                result = SyncResult.failed(str(e))
            except Exception as e:
                log.exception("sync_attempt_failed trigger=%s error=%s", trigger, e, extra={"trigger": trigger, "outcome": "failed"})
                result = SyncResult.failed(f"Sync failed: {e}")
        finally:
            self.state = SyncState.IDLE

        self.last_result = result
        log.info(
            "sync_attempt_finished trigger=%s success=%s message=%s",
            trigger,
            result.success,
            result.message,
            extra={"trigger": trigger, "outcome": "success" if result.success else "failed"},
        )
        return result
