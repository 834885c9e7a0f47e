"""Synchronization between the remote backend and the local mirror.

The controller moves through three states::

    disconnected --probe ok--> syncing --initial fetch--> synced

Once synced, a fixed-interval poll and (when the backend offers one) a push
listener both trigger the same full re-fetch, which overwrites the mirror.
Fetches carry a monotonic sequence number so a slow response that arrives
after a newer one is discarded, and a poll tick is skipped while another
fetch is still in flight.
"""

import asyncio
import contextlib
from typing import Any

import structlog

from servetracker.backend.base import Backend, Unsubscribe
from servetracker.exceptions import BackendError
from servetracker.mirror import MirrorStore
from servetracker.models import Client, ServeAttempt, SyncState
from servetracker.normalize import add_client_names, normalize_many

logger = structlog.get_logger()

OFFLINE_WARNING = (
    "Could not reach the server. Working from locally saved data; "
    "use refresh to try again."
)


class SyncController:
    """Keep in-memory state and the local mirror fresh from the backend."""

    def __init__(
        self,
        backend: Backend,
        mirror: MirrorStore,
        poll_interval: float = 5.0,
        realtime: bool = True,
    ):
        """Initialize the controller.

        Args:
            backend: Remote backend to fetch from
            mirror: Local mirror to write through
            poll_interval: Seconds between periodic fetches
            realtime: Subscribe to push notifications when available
        """
        self.backend = backend
        self.mirror = mirror
        self.poll_interval = poll_interval
        self.realtime = realtime

        self.state = SyncState.DISCONNECTED
        self.warning: str | None = None
        self.clients: list[Client] = []
        self.serves: list[ServeAttempt] = []

        self._seq = 0
        self._applied_seq = 0
        self._in_flight = 0
        self._poll_task: asyncio.Task | None = None
        self._push_tasks: set[asyncio.Task] = set()
        self._unsubscribe: Unsubscribe | None = None

    @property
    def is_online(self) -> bool:
        return self.state != SyncState.DISCONNECTED

    def load_mirror(self) -> None:
        """Populate in-memory state from the mirror."""
        self.clients = self.mirror.load_clients()
        self.serves = self.mirror.load_serves()
        logger.info(
            "Loaded local mirror",
            clients=len(self.clients),
            serves=len(self.serves),
        )

    async def start(self) -> SyncState:
        """Load the mirror, probe the backend and begin syncing if reachable."""
        self.load_mirror()
        if await self.probe():
            await self._go_online()
        return self.state

    async def probe(self) -> bool:
        """Issue a lightweight reachability check."""
        try:
            await self.backend.list_clients()
        except BackendError as e:
            self.state = SyncState.DISCONNECTED
            self.warning = OFFLINE_WARNING
            logger.warning("Backend unreachable, using local mirror", error=str(e))
            return False

        self.state = SyncState.SYNCING
        self.warning = None
        return True

    async def _go_online(self) -> None:
        if not await self.refresh():
            self.state = SyncState.DISCONNECTED
            self.warning = OFFLINE_WARNING
            logger.warning("Initial fetch failed, staying on local mirror")
            return

        self.state = SyncState.SYNCED
        logger.info("Synchronized with backend", backend=self.backend.name)

        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
        if self.realtime and self._unsubscribe is None:
            self._unsubscribe = self.backend.subscribe(self._on_change)
            if self._unsubscribe is not None:
                logger.info("Subscribed to change notifications")

    async def refresh(self) -> bool:
        """Fetch clients and serve attempts and overwrite local state.

        Returns:
            True if the fetch was applied, False if it failed or was stale
        """
        self._seq += 1
        seq = self._seq
        self._in_flight += 1
        try:
            raw_clients = await self.backend.list_clients()
            raw_serves = await self.backend.list_serve_attempts()
        except BackendError as e:
            logger.error("Fetch failed", seq=seq, error=str(e))
            return False
        finally:
            self._in_flight -= 1

        if seq < self._applied_seq:
            logger.debug("Discarding stale fetch", seq=seq, applied=self._applied_seq)
            return False
        self._applied_seq = seq

        clients = normalize_many("client", raw_clients)
        serves = add_client_names(normalize_many("serve", raw_serves), clients)
        self.apply_local(clients=clients, serves=serves)
        logger.debug("Fetch applied", seq=seq, clients=len(clients), serves=len(serves))
        return True

    async def poll_once(self) -> bool:
        """Run one poll tick unless a fetch is already in flight."""
        if self._in_flight:
            logger.debug("Skipping poll, fetch in flight")
            return False
        return await self.refresh()

    async def manual_refresh(self) -> SyncState:
        """User-triggered refresh; re-probes when disconnected."""
        if self.state == SyncState.DISCONNECTED:
            if await self.probe():
                await self._go_online()
        else:
            await self.refresh()
        return self.state

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("Error during periodic sync", error=str(e))

    def _on_change(self, event: dict[str, Any]) -> None:
        """Push listener: any change event triggers a full re-fetch."""
        logger.debug("Change notification", events=event.get("events"))
        task = asyncio.get_running_loop().create_task(self.refresh())
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)

    def apply_local(
        self,
        clients: list[Client] | None = None,
        serves: list[ServeAttempt] | None = None,
    ) -> None:
        """Write collections into memory and the mirror."""
        if clients is not None:
            self.clients = list(clients)
            self.mirror.save_clients(self.clients)
        if serves is not None:
            self.serves = list(serves)
            self.mirror.save_serves(self.serves)

    async def stop(self) -> None:
        """Stop polling and unsubscribe from change notifications."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        tasks = list(self._push_tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Sync stopped")
