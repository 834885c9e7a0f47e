"""Pytest fixtures for testing."""

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from servetracker.backend.base import Backend, ChangeCallback, Unsubscribe
from servetracker.exceptions import BackendError, BackendUnavailableError
from servetracker.mirror import MirrorStore
from servetracker.models import EmailConfig, EmailResult
from servetracker.notifications import Notifier
from servetracker.orchestrator import ServeTracker
from servetracker.sync import SyncController


class FakeBackend(Backend):
    """In-memory backend storing Appwrite-shaped documents.

    Operations listed in ``fail`` raise BackendError; ``unreachable``
    makes every call raise BackendUnavailableError. Every call is recorded
    in ``calls``.
    """

    name = "fake"

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict[str, Any]]] = {
            "clients": {},
            "cases": {},
            "serves": {},
            "documents": {},
        }
        self.files: dict[str, bytes] = {}
        self.emails: list[dict[str, Any]] = []
        self.email_result = EmailResult(success=True, message="Email sent successfully.", id="em_1")
        self.calls: list[str] = []
        self.fail: set[str] = set()
        self.unreachable = False
        self.push_enabled = False
        self.subscribers: list[ChangeCallback] = []
        self._counter = 0

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if self.unreachable:
            raise BackendUnavailableError("backend offline")
        if op in self.fail:
            raise BackendError(f"{op} failed", status_code=500)

    def _new_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def seed(self, collection: str, doc_id: str, **fields: Any) -> dict[str, Any]:
        doc = {"$id": doc_id, **fields}
        self.collections[collection][doc_id] = doc
        return doc

    def docs(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        return [
            dict(d)
            for d in self.collections[collection].values()
            if all(d.get(k) == v for k, v in filters.items())
        ]

    async def list_clients(self) -> list[dict[str, Any]]:
        self._check("list_clients")
        return self.docs("clients")

    async def list_cases(self, client_id: str) -> list[dict[str, Any]]:
        self._check("list_cases")
        return self.docs("cases", client_id=client_id)

    async def list_serve_attempts(self, client_id: str | None = None) -> list[dict[str, Any]]:
        self._check("list_serve_attempts")
        if client_id:
            return self.docs("serves", client_id=client_id)
        return self.docs("serves")

    async def list_documents(
        self, client_id: str, case_number: str | None = None
    ) -> list[dict[str, Any]]:
        self._check("list_documents")
        if case_number:
            return self.docs("documents", client_id=client_id, case_number=case_number)
        return self.docs("documents", client_id=client_id)

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> dict[str, Any]:
        self._check(f"create_{collection}")
        doc_id = doc_id or self._new_id(collection)
        doc = {"$id": doc_id, "$createdAt": "2024-01-15T10:00:00.000+00:00", **data}
        self.collections[collection][doc_id] = doc
        return dict(doc)

    async def update(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        self._check(f"update_{collection}")
        if doc_id not in self.collections[collection]:
            raise BackendError("Document not found", status_code=404)
        self.collections[collection][doc_id].update(data)
        return dict(self.collections[collection][doc_id])

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check(f"delete_{collection}")
        if self.collections[collection].pop(doc_id, None) is None:
            raise BackendError("Document not found", status_code=404)

    async def upload_file(self, file_name: str, content: bytes, content_type: str) -> str:
        self._check("upload_file")
        file_id = self._new_id("file")
        self.files[file_id] = content
        return file_id

    def get_file_url(self, file_id: str) -> str:
        return f"https://files.test/{file_id}/view"

    async def delete_file(self, file_id: str) -> None:
        self._check("delete_file")
        self.files.pop(file_id, None)

    async def invoke_function(self, function_id: str, payload: dict[str, Any]) -> EmailResult:
        self._check("invoke_function")
        self.emails.append(payload)
        return self.email_result

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe | None:
        if not self.push_enabled:
            return None
        self.subscribers.append(callback)
        return lambda: self.subscribers.remove(callback)


class GatedBackend(FakeBackend):
    """FakeBackend whose serve listing can be held open to simulate a slow fetch."""

    def __init__(self) -> None:
        super().__init__()
        self.gates: list[asyncio.Event] = []
        self.entered = asyncio.Event()

    async def list_serve_attempts(self, client_id: str | None = None) -> list[dict[str, Any]]:
        result = await super().list_serve_attempts(client_id)
        if self.gates:
            gate = self.gates.pop(0)
            self.entered.set()
            await gate.wait()
        return result


@pytest.fixture
def backend() -> FakeBackend:
    """Create an empty fake backend."""
    return FakeBackend()


@pytest.fixture
def mirror(tmp_path) -> MirrorStore:
    """Create a mirror store in a temporary directory."""
    store = MirrorStore(tmp_path / "mirror.db")
    yield store
    store.close()


@pytest_asyncio.fixture
async def sync(backend: FakeBackend, mirror: MirrorStore) -> SyncController:
    """Create a sync controller with a long poll interval."""
    controller = SyncController(backend, mirror, poll_interval=3600)
    yield controller
    await controller.stop()


@pytest.fixture
def notifier(backend: FakeBackend) -> Notifier:
    """Create a notifier that sends through the fake backend."""
    return Notifier(backend, EmailConfig(), function_id="email-fn")


@pytest.fixture
def tracker(backend: FakeBackend, sync: SyncController, notifier: Notifier) -> ServeTracker:
    """Create the orchestration facade."""
    return ServeTracker(backend, sync, notifier)


@pytest.fixture
def seeded(backend: FakeBackend) -> FakeBackend:
    """Fake backend holding one client with an open case."""
    backend.seed(
        "clients",
        "client-1",
        name="Acme Holdings",
        email="a@example.com",
        additional_emails=["legal@acme.test"],
        phone="555-0100",
        address="1 Main St",
        notes="",
    )
    backend.seed(
        "cases",
        "case-1",
        client_id="client-1",
        case_number="CV-2023-0001",
        case_name="Acme v. Roe",
        status="Active",
    )
    return backend
