from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping, Optional, Protocol, Union

import requests

from bizledger.domain.models import SyncResult

log = logging.getLogger("bizledger.sync")

Unsubscribe = Callable[[], None]
GatewayResult = Union[SyncResult, Mapping[str, Any]]


class RemoteSyncGateway(Protocol):
    """Remote store client. Calls may block; the orchestrator runs them off the event loop."""

    def can_sync(self) -> bool: ...
    def sync_all_data(self) -> GatewayResult: ...
    def force_upload_all_data(self) -> GatewayResult: ...
    def restore_if_empty(self) -> GatewayResult: ...
    def reset_sync_status(self) -> None: ...
    def get_sync_status(self) -> dict: ...


class NetworkObserver(Protocol):
    def is_online(self) -> bool: ...
    def subscribe(self, callback: Callable[[bool], None]) -> Unsubscribe: ...


class AuthProvider(Protocol):
    def current_user(self) -> Optional[str]: ...
    def subscribe(self, callback: Callable[[Optional[str]], None]) -> Unsubscribe: ...


class HttpConnectivityObserver:
    """NetworkObserver that polls a URL with HEAD requests on a daemon thread.

    Subscribers are called from the polling thread on every online/offline
    transition.
    """

    def __init__(
        self,
        url: str,
        interval: float = 15.0,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.interval = float(interval)
        self.timeout = float(timeout)
        self._session = session or requests.Session()
        self._online = False
        self._callbacks: list[Callable[[bool], None]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check(self) -> bool:
        try:
            r = self._session.head(self.url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            log.debug("connectivity_check_failed url=%s error=%s", self.url, e)
            return False
        return r.status_code < 500

    def is_online(self) -> bool:
        return self._online

    def poll_once(self) -> bool:
        online = self.check()
        if online == self._online:
            return online
        self._online = online
        log.info("connectivity_changed online=%s", online)
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb(online)
            except Exception:
                log.exception("connectivity_callback_failed")
        return online

    def subscribe(self, callback: Callable[[bool], None]) -> Unsubscribe:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll_once()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._online = self.check()
        self._thread = threading.Thread(target=self._run, name="connectivity-check", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.timeout + 1)
        self._thread = None
