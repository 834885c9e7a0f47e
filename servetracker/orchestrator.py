"""CRUD orchestration for clients, cases, serve attempts and documents.

Every mutation goes to the remote backend first; on success the result is
merged into the sync controller's in-memory state and the local mirror.
Serve attempt mutations also send a notification email, best-effort.
"""

import csv
import io
import mimetypes
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

import structlog

from servetracker.backend.base import Backend
from servetracker.exceptions import BackendError, ValidationError
from servetracker.models import (
    Case,
    CaseInput,
    CaseStatus,
    Client,
    ClientDocument,
    ClientInput,
    ServeAttempt,
    ServeInput,
    ServeStatus,
    utcnow,
)
from servetracker.normalize import (
    normalize_case,
    normalize_client,
    normalize_document,
    normalize_many,
    normalize_serve,
    parse_coordinates,
    resolve_id,
)
from servetracker.notifications import Notifier
from servetracker.sync import SyncController

logger = structlog.get_logger()


@dataclass
class CascadeReport:
    """Outcome of deleting a client and everything under it."""

    client_id: str
    serves_deleted: int = 0
    cases_deleted: int = 0
    documents_deleted: int = 0
    failed_steps: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True when no dependent record was left behind."""
        return not self.failed_steps


def _require(values: dict[str, Any]) -> None:
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", fields=missing
        )


def client_to_document(data: ClientInput) -> dict[str, Any]:
    return {
        "name": data.name,
        "email": data.email,
        "additional_emails": data.additional_emails,
        "phone": data.phone,
        "address": data.address,
        "notes": data.notes,
    }


def case_to_document(data: CaseInput) -> dict[str, Any]:
    return {
        "case_number": data.case_number,
        "case_name": data.case_name,
        "client_id": data.client_id,
        "description": data.description,
        "status": data.status.value,
        "home_address": data.home_address,
        "work_address": data.work_address,
        "updated_at": utcnow().isoformat(),
    }


def serve_to_document(serve: ServeAttempt) -> dict[str, Any]:
    coords = parse_coordinates(serve.coordinates)
    return {
        "client_id": serve.client_id,
        "case_number": serve.case_number,
        "status": serve.status,
        "notes": serve.notes,
        "coordinates": f"{coords.latitude},{coords.longitude}" if coords else None,
        "timestamp": serve.timestamp.isoformat(),
        "image_data": serve.image_data,
        "attempt_number": serve.attempt_number,
    }


class ServeTracker:
    """Application-level operations over the remote backend and local state."""

    def __init__(self, backend: Backend, sync: SyncController, notifier: Notifier):
        self.backend = backend
        self.sync = sync
        self.notifier = notifier

    # Clients

    def get_client(self, client_id: str) -> Client | None:
        return next((c for c in self.sync.clients if c.id == client_id), None)

    async def add_client(self, data: ClientInput) -> Client:
        """Create a client remotely and add it to local state."""
        _require({"name": data.name, "email": data.email})

        try:
            doc = await self.backend.create_client(client_to_document(data), data.id)
        except BackendError as e:
            logger.error("Failed to save client", name=data.name, error=str(e))
            raise

        client = normalize_client(doc)
        if client is None:
            raise BackendError("Backend returned a client without an id")

        others = [c for c in self.sync.clients if c.id != client.id]
        self.sync.apply_local(clients=[client, *others])
        logger.info("Client saved", client_id=client.id)
        return client

    async def update_client(self, client_id: str, data: ClientInput) -> Client:
        """Update a client remotely and in local state."""
        _require({"id": client_id, "name": data.name, "email": data.email})

        try:
            doc = await self.backend.update_client(client_id, client_to_document(data))
        except BackendError as e:
            logger.error("Failed to update client", client_id=client_id, error=str(e))
            raise

        client = normalize_client(doc) or Client(
            id=client_id, **client_to_document(data)
        )
        self.sync.apply_local(
            clients=[client if c.id == client_id else c for c in self.sync.clients]
        )
        logger.info("Client updated", client_id=client_id)
        return client

    async def delete_client(self, client_id: str) -> CascadeReport:
        """Delete a client after best-effort deletion of its dependents.

        Serve attempts, cases and documents are removed in that order. A
        failed step is logged and recorded in the report; it never stops
        the remaining steps or the client deletion itself.

        Raises:
            BackendError: If the client record itself could not be deleted
        """
        _require({"id": client_id})
        report = CascadeReport(client_id=client_id)

        await self._cascade_serves(report)
        await self._cascade_cases(report)
        await self._cascade_documents(report)

        try:
            await self.backend.delete_client(client_id)
        except BackendError as e:
            logger.error("Failed to delete client", client_id=client_id, error=str(e))
            raise

        self.sync.apply_local(
            clients=[c for c in self.sync.clients if c.id != client_id],
            serves=[s for s in self.sync.serves if s.client_id != client_id],
        )
        logger.info(
            "Client deleted",
            client_id=client_id,
            serves=report.serves_deleted,
            cases=report.cases_deleted,
            documents=report.documents_deleted,
            failed_steps=report.failed_steps,
        )
        return report

    async def _cascade_serves(self, report: CascadeReport) -> None:
        try:
            docs = await self.backend.list_serve_attempts(report.client_id)
        except BackendError as e:
            logger.error("Could not list serve attempts for client", error=str(e))
            report.failed_steps.append("list serve attempts")
            return

        for doc in docs:
            serve_id = resolve_id(doc)
            if serve_id is None:
                continue
            try:
                await self.backend.delete_serve_attempt(serve_id)
                report.serves_deleted += 1
            except BackendError as e:
                logger.error("Could not delete serve attempt", id=serve_id, error=str(e))
                report.failed_steps.append(f"serve attempt {serve_id}")

    async def _cascade_cases(self, report: CascadeReport) -> None:
        try:
            docs = await self.backend.list_cases(report.client_id)
        except BackendError as e:
            logger.error("Could not list cases for client", error=str(e))
            report.failed_steps.append("list cases")
            return

        for doc in docs:
            case_id = resolve_id(doc)
            if case_id is None:
                continue
            try:
                await self.backend.delete_case(case_id)
                report.cases_deleted += 1
            except BackendError as e:
                logger.error("Could not delete case", id=case_id, error=str(e))
                report.failed_steps.append(f"case {case_id}")

    async def _cascade_documents(self, report: CascadeReport) -> None:
        try:
            docs = await self.backend.list_documents(report.client_id)
        except BackendError as e:
            logger.error("Could not list documents for client", error=str(e))
            report.failed_steps.append("list documents")
            return

        for document in normalize_many("document", docs):
            if not await self._delete_stored_file(document):
                report.failed_steps.append(f"file {document.file_path}")
            try:
                await self.backend.delete_document_record(document.id)
                report.documents_deleted += 1
            except BackendError as e:
                logger.error("Could not delete document", id=document.id, error=str(e))
                report.failed_steps.append(f"document {document.id}")

    # Cases

    async def list_cases(self, client_id: str) -> list[Case]:
        docs = await self.backend.list_cases(client_id)
        return normalize_many("case", docs)

    async def open_cases(self, client_id: str) -> list[Case]:
        """Cases a new serve attempt can be logged against."""
        return [c for c in await self.list_cases(client_id) if c.status != CaseStatus.CLOSED]

    async def add_case(self, data: CaseInput) -> Case:
        _require({"case_number": data.case_number, "client_id": data.client_id})
        document = case_to_document(data)
        document["created_at"] = document["updated_at"]
        try:
            doc = await self.backend.create_case(document)
        except BackendError as e:
            logger.error("Failed to save case", case_number=data.case_number, error=str(e))
            raise

        case = normalize_case(doc)
        if case is None:
            raise BackendError("Backend returned a case without an id")
        logger.info("Case saved", case_id=case.id, case_number=case.case_number)
        return case

    async def update_case(self, case_id: str, data: CaseInput) -> Case:
        _require({"id": case_id, "case_number": data.case_number, "client_id": data.client_id})
        try:
            doc = await self.backend.update_case(case_id, case_to_document(data))
        except BackendError as e:
            logger.error("Failed to update case", case_id=case_id, error=str(e))
            raise
        return normalize_case(doc) or Case(id=case_id, **data.model_dump())

    async def update_case_status(self, case_id: str, status: CaseStatus) -> None:
        await self.backend.update_case(
            case_id, {"status": status.value, "updated_at": utcnow().isoformat()}
        )
        logger.info("Case status updated", case_id=case_id, status=status.value)

    async def delete_case(self, case_id: str) -> None:
        _require({"id": case_id})
        try:
            await self.backend.delete_case(case_id)
        except BackendError as e:
            logger.error("Failed to delete case", case_id=case_id, error=str(e))
            raise

    async def _advance_case_status(
        self, client_id: str, case_number: str, serve_status: str
    ) -> CaseStatus | None:
        """Close the case on a completed serve, mark it Pending on a failed one.

        Every case of the client with this case number is updated. A failed
        serve never reopens a Closed case. Best-effort: failures are logged
        and None is returned.
        """
        if serve_status == ServeStatus.COMPLETED.value:
            target = CaseStatus.CLOSED
        elif serve_status == ServeStatus.FAILED.value:
            target = CaseStatus.PENDING
        else:
            return None

        try:
            cases = [c for c in await self.list_cases(client_id) if c.case_number == case_number]
            if not cases:
                logger.warning("No case to update", client_id=client_id, case_number=case_number)
                return None
            for case in cases:
                if case.status == target or case.status == CaseStatus.CLOSED:
                    continue
                await self.update_case_status(case.id, target)
            return target
        except BackendError as e:
            logger.error("Failed to update case status", case_number=case_number, error=str(e))
            return None

    # Serve attempts

    async def next_attempt_number(self, client_id: str, case_number: str) -> int:
        """Count existing attempts for the client and case, plus one.

        Computed client-side; two concurrent writers can get the same number.
        """
        try:
            serves = normalize_many("serve", await self.backend.list_serve_attempts(client_id))
        except BackendError as e:
            logger.warning("Counting attempts from local state", error=str(e))
            serves = self.sync.serves
        return 1 + sum(
            1 for s in serves if s.client_id == client_id and s.case_number == case_number
        )

    async def add_serve(self, data: ServeInput) -> ServeAttempt:
        """Record a serve attempt, advance the case status and notify."""
        _require({"client_id": data.client_id, "case_number": data.case_number})
        client = self.get_client(data.client_id)
        if client is None:
            raise ValidationError(f"Client not found: {data.client_id}", fields=["client_id"])

        attempt_number = await self.next_attempt_number(data.client_id, data.case_number)
        serve = ServeAttempt(
            id=data.id or "pending",
            client_id=data.client_id,
            client_name=client.name,
            case_number=data.case_number,
            attempt_number=attempt_number,
            status=data.status.value,
            notes=data.notes,
            coordinates=data.coordinates,
            image_data=data.image_data,
            timestamp=data.timestamp,
        )

        try:
            doc = await self.backend.create_serve_attempt(serve_to_document(serve), data.id)
        except BackendError as e:
            logger.error("Failed to save serve attempt", case_number=data.case_number, error=str(e))
            raise

        saved = normalize_serve(doc)
        if saved is None:
            raise BackendError("Backend returned a serve attempt without an id")
        saved = saved.model_copy(update={"client_name": client.name})

        others = [s for s in self.sync.serves if s.id != saved.id]
        self.sync.apply_local(serves=[saved, *others])
        logger.info(
            "Serve attempt saved",
            serve_id=saved.id,
            case_number=saved.case_number,
            attempt=saved.attempt_number,
        )

        await self._advance_case_status(saved.client_id, saved.case_number, saved.status)
        await self.notifier.serve_created(saved, client, data.address)
        return saved

    async def update_serve(self, serve: ServeAttempt) -> ServeAttempt:
        """Update a serve attempt and notify about the change."""
        _require({"id": serve.id, "client_id": serve.client_id, "case_number": serve.case_number})
        previous = next((s for s in self.sync.serves if s.id == serve.id), None)
        old_status = previous.status if previous else "unknown"

        try:
            doc = await self.backend.update_serve_attempt(serve.id, serve_to_document(serve))
        except BackendError as e:
            logger.error("Failed to update serve attempt", serve_id=serve.id, error=str(e))
            raise

        updated = normalize_serve(doc) or serve
        updated = updated.model_copy(update={"client_name": serve.client_name})
        self.sync.apply_local(
            serves=[updated if s.id == serve.id else s for s in self.sync.serves]
        )
        logger.info("Serve attempt updated", serve_id=serve.id, status=updated.status)

        if updated.status != old_status:
            await self._advance_case_status(updated.client_id, updated.case_number, updated.status)

        client = self.get_client(updated.client_id)
        if client is not None:
            await self.notifier.serve_updated(updated, client, old_status)
        return updated

    async def delete_serve(self, serve_id: str, reason: str | None = None) -> None:
        """Delete a serve attempt and notify the client."""
        _require({"id": serve_id})
        serve = next((s for s in self.sync.serves if s.id == serve_id), None)

        try:
            await self.backend.delete_serve_attempt(serve_id)
        except BackendError as e:
            logger.error("Failed to delete serve attempt", serve_id=serve_id, error=str(e))
            raise

        self.sync.apply_local(serves=[s for s in self.sync.serves if s.id != serve_id])
        logger.info("Serve attempt deleted", serve_id=serve_id)

        if serve is not None:
            client = self.get_client(serve.client_id)
            if client is not None:
                await self.notifier.serve_deleted(serve, client, reason)

    async def push_local_serves(self) -> int:
        """Create remotely every mirrored serve attempt the backend lacks.

        Returns:
            Number of serve attempts created
        """
        remote_ids = {resolve_id(d) for d in await self.backend.list_serve_attempts()}
        created = 0
        for serve in self.sync.serves:
            if serve.id in remote_ids:
                continue
            try:
                await self.backend.create_serve_attempt(serve_to_document(serve), serve.id)
                created += 1
            except BackendError as e:
                logger.error("Failed to push serve attempt", serve_id=serve.id, error=str(e))
        logger.info("Pushed local serve attempts", created=created)
        return created

    def export_serves_csv(self, start: date, end: date) -> str:
        """Export serve attempts with timestamps in [start, end] as CSV."""
        if isinstance(start, datetime):
            start = start.date()
        if isinstance(end, datetime):
            end = end.date()

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(
            ["Date", "Time", "Client", "Case Number", "Attempt", "Status", "Coordinates", "Notes"]
        )
        rows = sorted(
            (s for s in self.sync.serves if start <= s.timestamp.date() <= end),
            key=lambda s: s.timestamp,
        )
        for serve in rows:
            coords = parse_coordinates(serve.coordinates)
            writer.writerow(
                [
                    serve.timestamp.date().isoformat(),
                    serve.timestamp.strftime("%H:%M:%S"),
                    serve.client_name,
                    serve.case_number,
                    serve.attempt_number,
                    serve.status,
                    f"{coords.latitude},{coords.longitude}" if coords else "",
                    serve.notes,
                ]
            )
        return buffer.getvalue()

    # Documents

    async def list_documents(
        self, client_id: str, case_number: str | None = None
    ) -> list[ClientDocument]:
        docs = await self.backend.list_documents(client_id, case_number)
        return normalize_many("document", docs)

    async def upload_document(
        self,
        client_id: str,
        path: str | Path,
        case_number: str | None = None,
        description: str | None = None,
    ) -> ClientDocument | None:
        """Upload a file for a client; None if the upload failed."""
        _require({"client_id": client_id, "path": str(path)})
        content_type = mimetypes.guess_type(str(path))[0] or "application/octet-stream"
        doc = await self.backend.upload_document(
            client_id, path, case_number, description, content_type
        )
        if doc is None:
            return None
        document = normalize_document(doc)
        if document is not None:
            logger.info("Document uploaded", document_id=document.id, client_id=client_id)
        return document

    def document_url(self, document: ClientDocument) -> str:
        return self.backend.get_file_url(document.file_path)

    async def delete_document(self, document: ClientDocument) -> None:
        """Delete the stored file (best-effort) and the metadata record."""
        await self._delete_stored_file(document)
        try:
            await self.backend.delete_document_record(document.id)
        except BackendError as e:
            logger.error("Failed to delete document", document_id=document.id, error=str(e))
            raise

    async def _delete_stored_file(self, document: ClientDocument) -> bool:
        if not document.file_path:
            return True
        try:
            await self.backend.delete_file(document.file_path)
            return True
        except BackendError as e:
            logger.error("Could not delete stored file", file_path=document.file_path, error=str(e))
            return False
