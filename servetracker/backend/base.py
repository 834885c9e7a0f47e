"""Remote backend interface."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from servetracker.exceptions import BackendError
from servetracker.models import EmailResult

logger = structlog.get_logger()

ChangeCallback = Callable[[dict[str, Any]], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class Backend(ABC):
    """Abstract remote backend.

    Defines the contract shared by the BaaS and the legacy REST API. All
    list operations return raw documents; callers normalize them. Failed
    calls raise BackendError and are never retried here.
    """

    name = "backend"

    # Documents

    @abstractmethod
    async def list_clients(self) -> list[dict[str, Any]]:
        """List all client documents."""

    @abstractmethod
    async def list_cases(self, client_id: str) -> list[dict[str, Any]]:
        """List the case documents owned by a client."""

    @abstractmethod
    async def list_serve_attempts(
        self, client_id: str | None = None
    ) -> list[dict[str, Any]]:
        """List serve attempt documents, optionally for one client."""

    @abstractmethod
    async def list_documents(
        self, client_id: str, case_number: str | None = None
    ) -> list[dict[str, Any]]:
        """List document metadata records for a client (and case)."""

    @abstractmethod
    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> dict[str, Any]:
        """Create a document in a collection and return it."""

    @abstractmethod
    async def update(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a document and return it."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document."""

    # Files

    @abstractmethod
    async def upload_file(
        self, file_name: str, content: bytes, content_type: str
    ) -> str:
        """Store a binary and return its file id."""

    @abstractmethod
    def get_file_url(self, file_id: str) -> str:
        """Return a URL that serves the stored file."""

    @abstractmethod
    async def delete_file(self, file_id: str) -> None:
        """Delete a stored file."""

    # Functions

    @abstractmethod
    async def invoke_function(
        self, function_id: str, payload: dict[str, Any]
    ) -> EmailResult:
        """Run a server-side function with a JSON payload."""

    # Change notifications

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe | None:
        """Register for change events.

        Returns an unsubscribe handle, or None when the backend has no
        push channel and callers must poll.
        """
        return None

    async def close(self) -> None:
        """Release network resources."""

    # Entity helpers shared by implementations

    async def create_client(self, data: dict[str, Any], doc_id: str | None = None):
        return await self.create("clients", data, doc_id)

    async def update_client(self, doc_id: str, data: dict[str, Any]):
        return await self.update("clients", doc_id, data)

    async def delete_client(self, doc_id: str) -> None:
        await self.delete("clients", doc_id)

    async def create_case(self, data: dict[str, Any], doc_id: str | None = None):
        return await self.create("cases", data, doc_id)

    async def update_case(self, doc_id: str, data: dict[str, Any]):
        return await self.update("cases", doc_id, data)

    async def delete_case(self, doc_id: str) -> None:
        await self.delete("cases", doc_id)

    async def create_serve_attempt(
        self, data: dict[str, Any], doc_id: str | None = None
    ):
        return await self.create("serves", data, doc_id)

    async def update_serve_attempt(self, doc_id: str, data: dict[str, Any]):
        return await self.update("serves", doc_id, data)

    async def delete_serve_attempt(self, doc_id: str) -> None:
        await self.delete("serves", doc_id)

    async def create_document_record(self, data: dict[str, Any]):
        return await self.create("documents", data)

    async def delete_document_record(self, doc_id: str) -> None:
        await self.delete("documents", doc_id)

    async def upload_document(
        self,
        client_id: str,
        path: str | Path,
        case_number: str | None = None,
        description: str | None = None,
        content_type: str = "application/octet-stream",
    ) -> dict[str, Any] | None:
        """Upload a file and create its metadata record.

        Args:
            client_id: Owning client
            path: Local file to upload
            case_number: Optional case the document belongs to
            description: Optional free-text description
            content_type: MIME type stored with the record

        Returns:
            The created metadata document, or None if any step failed
        """
        path = Path(path)
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except OSError as e:
            logger.error("Could not read document", path=str(path), error=str(e))
            return None

        try:
            file_id = await self.upload_file(path.name, content, content_type)
            return await self.create_document_record(
                {
                    "client_id": client_id,
                    "case_number": case_number,
                    "file_path": file_id,
                    "file_name": path.name,
                    "file_type": content_type,
                    "file_size": len(content),
                    "description": description,
                }
            )
        except BackendError as e:
            logger.error(
                "Document upload failed",
                client_id=client_id,
                file_name=path.name,
                error=str(e),
            )
            return None
