"""Tests for the synchronization controller."""

import asyncio

import httpx
import pytest

from servetracker.backend import AppwriteBackend
from servetracker.mirror import SERVES_KEY, MirrorStore
from servetracker.models import BackendConfig, Client, SyncState
from servetracker.sync import SyncController

from .conftest import FakeBackend, GatedBackend


async def _settle(condition, attempts: int = 20) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)


class TestStartup:
    """Tests for the startup sequence."""

    @pytest.mark.asyncio
    async def test_start_syncs_and_writes_mirror(
        self, seeded: FakeBackend, sync: SyncController, mirror: MirrorStore
    ) -> None:
        seeded.seed("serves", "s1", client_id="client-1", case_number="CV-2023-0001", status="failed")

        state = await sync.start()

        assert state == SyncState.SYNCED
        assert sync.warning is None
        assert [c.id for c in sync.clients] == ["client-1"]
        assert sync.serves[0].client_name == "Acme Holdings"
        assert [s.id for s in mirror.load_serves()] == ["s1"]
        assert [c.id for c in mirror.load_clients()] == ["client-1"]

    @pytest.mark.asyncio
    async def test_unreachable_backend_uses_mirror(
        self, backend: FakeBackend, sync: SyncController, mirror: MirrorStore
    ) -> None:
        """A failed probe leaves the cached clients usable with no further calls."""
        mirror.save_clients([Client(id="cached-1", name="Cached Client")])
        backend.unreachable = True

        state = await sync.start()

        assert state == SyncState.DISCONNECTED
        assert sync.warning
        assert [c.name for c in sync.clients] == ["Cached Client"]
        assert backend.calls == ["list_clients"]

    @pytest.mark.asyncio
    async def test_manual_refresh_reconnects(
        self, seeded: FakeBackend, sync: SyncController
    ) -> None:
        seeded.unreachable = True
        await sync.start()
        assert sync.state == SyncState.DISCONNECTED

        seeded.unreachable = False
        state = await sync.manual_refresh()

        assert state == SyncState.SYNCED
        assert sync.warning is None
        assert [c.id for c in sync.clients] == ["client-1"]

    @pytest.mark.asyncio
    async def test_initial_fetch_failure_stays_disconnected(
        self, seeded: FakeBackend, sync: SyncController
    ) -> None:
        seeded.fail.add("list_serve_attempts")
        assert await sync.start() == SyncState.DISCONNECTED


class TestPeriodicFetch:
    """Tests for refresh behaviour while synced."""

    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(
        self, seeded: FakeBackend, sync: SyncController, mirror: MirrorStore
    ) -> None:
        seeded.seed("serves", "s1", client_id="client-1", status="completed",
                    timestamp="2024-02-02T10:00:00+00:00")
        await sync.start()

        await sync.poll_once()
        first = mirror.get(SERVES_KEY)
        await sync.poll_once()
        second = mirror.get(SERVES_KEY)

        assert first == second
        assert len(first) == 1

    @pytest.mark.asyncio
    async def test_failure_while_synced_does_not_regress(
        self, seeded: FakeBackend, sync: SyncController
    ) -> None:
        await sync.start()
        seeded.unreachable = True

        assert await sync.poll_once() is False
        assert sync.state == SyncState.SYNCED
        assert [c.id for c in sync.clients] == ["client-1"]

    @pytest.mark.asyncio
    async def test_remote_changes_overwrite_mirror(
        self, seeded: FakeBackend, sync: SyncController, mirror: MirrorStore
    ) -> None:
        await sync.start()
        seeded.seed("clients", "client-2", name="Beta LLC", email="b@example.com")

        await sync.poll_once()

        assert {c.id for c in mirror.load_clients()} == {"client-1", "client-2"}


class TestConcurrentFetches:
    """Tests for single-flight polling and stale response handling."""

    @pytest.mark.asyncio
    async def test_poll_skipped_while_fetch_in_flight(self, mirror: MirrorStore) -> None:
        backend = GatedBackend()
        sync = SyncController(backend, mirror, poll_interval=3600)
        gate = asyncio.Event()
        backend.gates.append(gate)

        slow = asyncio.create_task(sync.refresh())
        await backend.entered.wait()
        calls_before = len(backend.calls)

        assert await sync.poll_once() is False
        assert len(backend.calls) == calls_before

        gate.set()
        assert await slow is True
        await sync.stop()

    @pytest.mark.asyncio
    async def test_stale_response_is_discarded(self, mirror: MirrorStore) -> None:
        backend = GatedBackend()
        backend.seed("clients", "client-1", name="Acme")
        sync = SyncController(backend, mirror, poll_interval=3600)
        gate = asyncio.Event()
        backend.gates.append(gate)

        slow = asyncio.create_task(sync.refresh())
        await backend.entered.wait()

        backend.seed("serves", "s-new", client_id="client-1", status="completed")
        assert await sync.refresh() is True
        assert [s.id for s in sync.serves] == ["s-new"]

        gate.set()
        assert await slow is False
        assert [s.id for s in sync.serves] == ["s-new"]
        assert [s.id for s in mirror.load_serves()] == ["s-new"]
        await sync.stop()


class TestPushNotifications:
    """Tests for the change-notification listener."""

    @pytest.mark.asyncio
    async def test_change_event_triggers_refetch(
        self, seeded: FakeBackend, sync: SyncController
    ) -> None:
        seeded.push_enabled = True
        await sync.start()
        assert len(seeded.subscribers) == 1

        seeded.seed("serves", "s9", client_id="client-1", status="failed")
        seeded.subscribers[0]({"events": ["databases.*.documents.*.create"]})
        await _settle(lambda: any(s.id == "s9" for s in sync.serves))

        assert [s.id for s in sync.serves] == ["s9"]

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, seeded: FakeBackend, sync: SyncController) -> None:
        seeded.push_enabled = True
        await sync.start()
        await sync.stop()
        assert seeded.subscribers == []

    @pytest.mark.asyncio
    async def test_no_push_channel_polls_only(
        self, seeded: FakeBackend, sync: SyncController
    ) -> None:
        await sync.start()
        assert seeded.subscribers == []
        assert sync.state == SyncState.SYNCED


class TestNonJsonResponses:
    """Tests for backends answering 2xx with something other than JSON."""

    @pytest.mark.asyncio
    async def test_html_page_leaves_controller_disconnected(self, mirror: MirrorStore) -> None:
        """A captive-portal HTML page counts as an unreachable backend."""
        mirror.save_clients([Client(id="cached-1", name="Cached Client")])
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>portal</html>")
        )
        backend = AppwriteBackend(
            BackendConfig(endpoint="https://appwrite.test/v1"), transport=transport
        )
        sync = SyncController(backend, mirror, poll_interval=3600)

        state = await sync.start()

        assert state == SyncState.DISCONNECTED
        assert sync.warning
        assert [c.id for c in sync.clients] == ["cached-1"]
        await sync.stop()
        await backend.close()
