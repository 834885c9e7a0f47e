"""Legacy MongoDB/Express REST backend."""

from pathlib import Path
from typing import Any

import aiofiles
import httpx
import structlog

from servetracker.backend.appwrite import parse_envelope
from servetracker.backend.base import Backend
from servetracker.exceptions import BackendError, BackendUnavailableError
from servetracker.models import BackendConfig, EmailResult

logger = structlog.get_logger()

ROUTES = {
    "clients": "/clients",
    "cases": "/cases",
    "serves": "/serve-attempts",
    "documents": "/documents",
}


class LegacyAPIBackend(Backend):
    """Backend for the older Express API in front of MongoDB.

    Documents are keyed by ``_id``. Document upload is a single multipart
    call that stores the file and its metadata together.
    """

    name = "legacy"

    def __init__(
        self,
        config: BackendConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.base_url = config.endpoint.rstrip("/")
        self.timeout = httpx.Timeout(config.timeout_seconds)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"User-Agent": "servetracker/0.1.0"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "API error",
                method=method,
                path=path,
                status_code=e.response.status_code,
                detail=e.response.text,
            )
            raise BackendError(
                f"API error: {e.response.status_code}",
                status_code=e.response.status_code,
                detail=e.response.text,
            ) from e
        except httpx.TransportError as e:
            logger.error("API unreachable", method=method, path=path, error=str(e))
            raise BackendUnavailableError(f"API unreachable: {e}") from e

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(
                "API returned invalid JSON",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise BackendError(
                "API error: invalid JSON response",
                status_code=response.status_code,
                detail=response.text,
            ) from e

    async def list_clients(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/clients") or []

    async def list_cases(self, client_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/cases/client/{client_id}") or []

    async def list_serve_attempts(
        self, client_id: str | None = None
    ) -> list[dict[str, Any]]:
        path = f"/serve-attempts/client/{client_id}" if client_id else "/serve-attempts"
        return await self._request("GET", path) or []

    async def list_documents(
        self, client_id: str, case_number: str | None = None
    ) -> list[dict[str, Any]]:
        params = {"caseNumber": case_number} if case_number else None
        return await self._request("GET", f"/documents/{client_id}", params=params) or []

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> dict[str, Any]:
        body = dict(data)
        if doc_id:
            body["_id"] = doc_id
        return await self._request("POST", ROUTES[collection], json=body)

    async def update(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request("PUT", f"{ROUTES[collection]}/{doc_id}", json=data)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._request("DELETE", f"{ROUTES[collection]}/{doc_id}")

    async def upload_file(
        self, file_name: str, content: bytes, content_type: str
    ) -> str:
        data = await self._request(
            "POST", "/files", files={"file": (file_name, content, content_type)}
        )
        return str(data["_id"])

    def get_file_url(self, file_id: str) -> str:
        return f"{self.base_url}/files/{file_id}"

    async def delete_file(self, file_id: str) -> None:
        await self._request("DELETE", f"/files/{file_id}")

    async def upload_document(
        self,
        client_id: str,
        path: str | Path,
        case_number: str | None = None,
        description: str | None = None,
        content_type: str = "application/octet-stream",
    ) -> dict[str, Any] | None:
        """Upload a file and its metadata in one multipart request."""
        path = Path(path)
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except OSError as e:
            logger.error("Could not read document", path=str(path), error=str(e))
            return None

        form = {"description": description or ""}
        if case_number:
            form["caseNumber"] = case_number

        try:
            return await self._request(
                "POST",
                f"/documents/upload/{client_id}",
                data=form,
                files={"file": (path.name, content, content_type)},
            )
        except BackendError as e:
            logger.error("Document upload failed", client_id=client_id, error=str(e))
            return None

    async def invoke_function(
        self, function_id: str, payload: dict[str, Any]
    ) -> EmailResult:
        """Post to the API's email route; the function id is unused here."""
        client = await self._get_client()
        try:
            response = await client.post("/email/send", json=payload)
        except httpx.TransportError as e:
            raise BackendUnavailableError(f"API unreachable: {e}") from e
        return parse_envelope(response.content, str(response.status_code))
