import asyncio
import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path

from conftest import make_repo

from bizledger.config import SyncSettings
from bizledger.domain.errors import SyncError
from bizledger.services.sync_orchestrator import SyncOrchestrator, SyncState

FAST = SyncSettings(
    sync_interval=3600,
    debounce_window=300,
    connectivity_settle_delay=0,
    login_settle_delay=0,
)


class FakeGateway:
    def __init__(self, result=None, can=True):
        self.result = result if result is not None else {"success": True, "message": "Sync completed"}
        self.can = can
        self.error = None
        self.block = None
        self.calls = []

    def can_sync(self):
        return self.can

    def sync_all_data(self):
        self.calls.append("sync")
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        return self.result

    def force_upload_all_data(self):
        self.calls.append("force")
        return {"success": True, "message": "Uploaded"}

    def restore_if_empty(self):
        self.calls.append("restore")
        return {"success": True, "message": "Restored"}

    def reset_sync_status(self):
        self.calls.append("reset")

    def get_sync_status(self):
        return {"remote_reachable": True}


class FakeNetwork:
    def __init__(self, online=True):
        self.online = online
        self.callbacks = []

    def is_online(self):
        return self.online

    def subscribe(self, callback):
        self.callbacks.append(callback)
        return lambda: self.callbacks.remove(callback)

    def set(self, online):
        self.online = online
        for cb in list(self.callbacks):
            cb(online)


class FakeAuth:
    def __init__(self, user="user-1"):
        self.user = user
        self.callbacks = []

    def current_user(self):
        return self.user

    def subscribe(self, callback):
        self.callbacks.append(callback)
        return lambda: self.callbacks.remove(callback)

    def set(self, user):
        self.user = user
        for cb in list(self.callbacks):
            cb(user)


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


async def _settle(orch):
    for _ in range(3):
        await asyncio.sleep(0)
    await orch.wait_for_pending()


async def _wait_until_syncing(orch):
    for _ in range(500):
        if orch.is_syncing:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("sync never started")


def test_connectivity_flapping_inside_window_syncs_once(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw, net, clock = FakeGateway(), FakeNetwork(online=False), Clock()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, net, FakeAuth(), settings=FAST, clock=clock)
        orch.start()
        for _ in range(3):
            net.set(True)
            await _settle(orch)
            net.set(False)
            await _settle(orch)
            clock.advance(seconds=30)
        orch.dispose()

    asyncio.run(scenario())
    assert gw.calls == ["sync"]


def test_connectivity_after_window_syncs_again(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw, net, clock = FakeGateway(), FakeNetwork(online=False), Clock()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, net, FakeAuth(), settings=FAST, clock=clock)
        orch.start()
        net.set(True)
        await _settle(orch)
        net.set(False)
        clock.advance(minutes=6)
        net.set(True)
        await _settle(orch)
        orch.dispose()

    asyncio.run(scenario())
    assert gw.calls == ["sync", "sync"]


def test_online_event_without_transition_is_ignored(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw, net = FakeGateway(), FakeNetwork(online=True)

    async def scenario():
        orch = SyncOrchestrator(repo, gw, net, FakeAuth(), settings=FAST, clock=Clock())
        orch.start()
        net.set(True)
        await _settle(orch)
        orch.dispose()

    asyncio.run(scenario())
    assert gw.calls == []


def test_login_triggers_sync(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw, auth = FakeGateway(), FakeAuth(user=None)

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), auth, settings=FAST, clock=Clock())
        orch.start()
        auth.set("user-1")
        await _settle(orch)
        auth.set("user-1")
        await _settle(orch)
        orch.dispose()

    asyncio.run(scenario())
    assert gw.calls == ["sync"]


def test_manual_sync_while_in_flight_is_skipped(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw = FakeGateway()
    gw.block = threading.Event()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        first = asyncio.create_task(orch.sync_now())
        await _wait_until_syncing(orch)
        second = await orch.sync_now()
        gw.block.set()
        return await first, second, orch.state

    first, second, state = asyncio.run(scenario())
    assert first.success is True
    assert second.skipped is True
    assert second.message == "Sync already in progress"
    assert gw.calls == ["sync"]
    assert state is SyncState.IDLE


def test_manual_sync_bypasses_debounce(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw = FakeGateway()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        await orch.sync_now()
        await orch.sync_now()
        return await orch.force_upload_all()

    result = asyncio.run(scenario())
    assert gw.calls == ["sync", "sync", "force"]
    assert result.message == "Uploaded"


def test_guards_skip_without_calling_gateway(tmp_path: Path):
    repo = make_repo(tmp_path)

    async def attempt(network, auth, gateway):
        orch = SyncOrchestrator(repo, gateway, network, auth, settings=FAST, clock=Clock())
        result = await orch.sync_now()
        return result, orch

    cases = [
        (FakeNetwork(online=False), FakeAuth(), FakeGateway(), "No internet connection"),
        (FakeNetwork(), FakeAuth(user=None), FakeGateway(), "User not authenticated"),
        (FakeNetwork(), FakeAuth(), FakeGateway(can=False), "Remote sync unavailable"),
    ]
    for network, auth, gateway, message in cases:
        result, orch = asyncio.run(attempt(network, auth, gateway))
        assert result.success is False
        assert result.skipped is True
        assert result.message == message
        assert gateway.calls == []
        assert orch.state is SyncState.IDLE
        assert orch.last_sync_attempt is None


class SlowGateway(FakeGateway):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def can_sync(self):
        time.sleep(self.delay)
        return self.can


async def _largest_gap(stop: asyncio.Event) -> float:
    largest = 0.0
    last = time.monotonic()
    while not stop.is_set():
        await asyncio.sleep(0.01)
        now = time.monotonic()
        largest = max(largest, now - last)
        last = now
    return largest


def test_slow_preflight_check_does_not_block_event_loop(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw = SlowGateway(delay=0.5)

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        stop = asyncio.Event()
        ticker = asyncio.create_task(_largest_gap(stop))
        first = asyncio.create_task(orch.sync_now())
        await _wait_until_syncing(orch)
        # The check is still running; a second trigger must see the attempt in flight.
        second = await orch.sync_now()
        result = await first
        stop.set()
        return result, second, await ticker, orch.state

    result, second, gap, state = asyncio.run(scenario())
    assert result.success is True
    assert second.message == "Sync already in progress"
    assert gw.calls == ["sync"]
    assert gap < 0.2
    assert state is SyncState.IDLE


def test_failing_preflight_check_is_a_skip(tmp_path: Path):
    repo = make_repo(tmp_path)

    class BrokenGateway(FakeGateway):
        def can_sync(self):
            raise RuntimeError("status endpoint down")

    gw = BrokenGateway()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        return await orch.sync_now(), orch

    result, orch = asyncio.run(scenario())
    assert result.skipped is True
    assert "status endpoint down" in result.message
    assert gw.calls == []
    assert orch.state is SyncState.IDLE
    assert orch.last_sync_attempt is None


def test_gateway_errors_become_failed_results(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw = FakeGateway()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        gw.error = SyncError("remote down")
        first = await orch.sync_now()
        gw.error = RuntimeError("socket closed")
        second = await orch.sync_now()
        gw.error = None
        gw.result = None
        third = await orch.sync_now()
        return first, second, third, orch

    first, second, third, orch = asyncio.run(scenario())
    assert (first.success, first.skipped, first.message) == (False, False, "remote down")
    assert second.success is False and "socket closed" in second.message
    assert third.success is False
    assert orch.state is SyncState.IDLE
    assert orch.last_result is third


def test_successful_sync_marks_transmitted_rows(tmp_path: Path):
    repo = make_repo(tmp_path)
    cid = repo.add_client("Ana", None, None)
    pid = repo.add_product("Rice", 1.0, 2.0, stock=5)
    gw = FakeGateway(
        result={
            "success": True,
            "message": "Sync completed",
            "transmitted": [
                {"entity_kind": "clients", "local_id": cid, "remote_id": "c-1"},
                {"entity_kind": "stock", "local_id": pid},
            ],
        }
    )

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        return await orch.sync_now()

    assert asyncio.run(scenario()).success is True
    assert repo.list_unsynced("clients") == []
    assert repo.list_unsynced("stock") == []
    assert repo.get_client_by_id(cid).remote_id == "c-1"
    assert [p.id for p in repo.list_unsynced("products")] == [pid]


def test_failed_sync_leaves_rows_unsynced(tmp_path: Path):
    repo = make_repo(tmp_path)
    cid = repo.add_client("Ana", None, None)
    gw = FakeGateway(
        result={
            "success": False,
            "message": "quota exceeded",
            "transmitted": [{"entity_kind": "clients", "local_id": cid}],
        }
    )

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        return await orch.sync_now()

    assert asyncio.run(scenario()).message == "quota exceeded"
    assert [c.id for c in repo.list_unsynced("clients")] == [cid]


def test_dispose_is_idempotent_and_unsubscribes(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw, net, auth = FakeGateway(), FakeNetwork(online=False), FakeAuth()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, net, auth, settings=FAST, clock=Clock())
        handle = orch.start()
        assert orch.start() is handle
        handle.dispose()
        handle.dispose()
        orch.dispose()
        net.set(True)
        await _settle(orch)
        return handle, orch

    handle, orch = asyncio.run(scenario())
    assert handle.disposed is True
    assert orch.running is False
    assert net.callbacks == []
    assert auth.callbacks == []
    assert gw.calls == []


def test_dispose_cancels_pending_settle_delay(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw, net = FakeGateway(), FakeNetwork(online=False)
    slow = SyncSettings(sync_interval=3600, debounce_window=300, connectivity_settle_delay=30, login_settle_delay=30)

    async def scenario():
        orch = SyncOrchestrator(repo, gw, net, FakeAuth(), settings=slow, clock=Clock())
        orch.start()
        net.set(True)
        for _ in range(3):
            await asyncio.sleep(0)
        orch.dispose()
        await orch.wait_for_pending()

    asyncio.run(scenario())
    assert gw.calls == []


def test_dispose_does_not_cancel_in_flight_attempt(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw, net = FakeGateway(), FakeNetwork(online=False)
    gw.block = threading.Event()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, net, FakeAuth(), settings=FAST, clock=Clock())
        orch.start()
        net.set(True)
        await _wait_until_syncing(orch)
        orch.dispose()
        gw.block.set()
        await orch.wait_for_pending()
        return orch

    orch = asyncio.run(scenario())
    assert gw.calls == ["sync"]
    assert orch.last_result.success is True
    assert orch.state is SyncState.IDLE


def test_periodic_timer_fires(tmp_path: Path):
    repo = make_repo(tmp_path)
    gw = FakeGateway()
    tick = SyncSettings(sync_interval=0.02, debounce_window=0, connectivity_settle_delay=0, login_settle_delay=0)

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=tick)
        orch.start()
        await asyncio.sleep(0.2)
        orch.dispose()
        await orch.wait_for_pending()

    asyncio.run(scenario())
    assert len(gw.calls) >= 1


def test_status_merges_remote_and_local(tmp_path: Path):
    repo = make_repo(tmp_path)
    repo.add_client("Ana", None, None)
    gw = FakeGateway()

    async def scenario():
        orch = SyncOrchestrator(repo, gw, FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        await orch.sync_now()
        return await orch.get_sync_status()

    status = asyncio.run(scenario())
    assert status["remote_reachable"] is True
    assert status["state"] == "idle"
    assert status["is_syncing"] is False
    assert status["last_sync_attempt"] == "2024-05-01T12:00:00"
    assert status["last_result"] == "Sync completed"
    assert status["local"]["clients"] == {"total": 1, "unsynced": 1, "synced_percent": 0}


def test_attempt_logs_carry_trigger_and_outcome(tmp_path: Path, caplog):
    repo = make_repo(tmp_path)
    caplog.set_level(logging.INFO, logger="bizledger.sync")

    async def scenario():
        orch = SyncOrchestrator(repo, FakeGateway(), FakeNetwork(), FakeAuth(), settings=FAST, clock=Clock())
        await orch.sync_now()
        offline = SyncOrchestrator(repo, FakeGateway(), FakeNetwork(online=False), FakeAuth(), settings=FAST, clock=Clock())
        await offline.force_upload_all()

    asyncio.run(scenario())
    tagged = [
        (r.getMessage().split()[0], r.trigger, r.outcome)
        for r in caplog.records
        if r.name == "bizledger.sync" and hasattr(r, "trigger")
    ]
    assert tagged == [
        ("sync_attempt_started", "manual", "started"),
        ("sync_attempt_finished", "manual", "success"),
        ("sync_skipped", "force_upload", "skipped"),
    ]
