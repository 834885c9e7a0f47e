"""Appwrite REST backend."""

from typing import Any

import httpx
import orjson
import structlog

from servetracker.backend.base import Backend
from servetracker.exceptions import BackendError, BackendUnavailableError
from servetracker.models import BackendConfig, EmailResult

logger = structlog.get_logger()

UNIQUE_ID = "unique()"


def equal(attribute: str, value: Any) -> str:
    """Build an Appwrite equality query."""
    return orjson.dumps(
        {"method": "equal", "attribute": attribute, "values": [value]}
    ).decode()


class AppwriteBackend(Backend):
    """Backend talking to the Appwrite database, storage and functions APIs.

    Documents are written with snake_case field names. Document ids are
    generated server-side unless the caller supplies one.
    """

    name = "appwrite"

    def __init__(
        self,
        config: BackendConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the backend.

        Args:
            config: Backend section of the configuration
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.config = config
        self.base_url = config.endpoint.rstrip("/")
        self.timeout = httpx.Timeout(config.timeout_seconds)
        self.collections = {
            "clients": config.clients_collection,
            "cases": config.cases_collection,
            "serves": config.serves_collection,
            "documents": config.documents_collection,
        }
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "X-Appwrite-Project": self.config.project_id,
                    "X-Appwrite-Key": self.config.api_key,
                    "User-Agent": "servetracker/0.1.0",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _documents_path(self, collection: str) -> str:
        collection_id = self.collections[collection]
        return (
            f"/databases/{self.config.database_id}"
            f"/collections/{collection_id}/documents"
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Appwrite request rejected",
                method=method,
                path=path,
                status_code=e.response.status_code,
                detail=e.response.text,
            )
            raise BackendError(
                f"Appwrite error: {e.response.status_code}",
                status_code=e.response.status_code,
                detail=e.response.text,
            ) from e
        except httpx.TransportError as e:
            logger.error("Appwrite unreachable", method=method, path=path, error=str(e))
            raise BackendUnavailableError(f"Appwrite unreachable: {e}") from e

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(
                "Appwrite returned invalid JSON",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise BackendError(
                "Appwrite error: invalid JSON response",
                status_code=response.status_code,
                detail=response.text,
            ) from e

    async def _list(self, collection: str, queries: list[str] | None = None):
        params = [("queries[]", q) for q in queries or []]
        data = await self._request("GET", self._documents_path(collection), params=params)
        return data.get("documents", []) if data else []

    async def list_clients(self) -> list[dict[str, Any]]:
        return await self._list("clients")

    async def list_cases(self, client_id: str) -> list[dict[str, Any]]:
        return await self._list("cases", [equal("client_id", client_id)])

    async def list_serve_attempts(
        self, client_id: str | None = None
    ) -> list[dict[str, Any]]:
        queries = [equal("client_id", client_id)] if client_id else None
        return await self._list("serves", queries)

    async def list_documents(
        self, client_id: str, case_number: str | None = None
    ) -> list[dict[str, Any]]:
        queries = [equal("client_id", client_id)]
        if case_number:
            queries.append(equal("case_number", case_number))
        return await self._list("documents", queries)

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> dict[str, Any]:
        logger.info("Creating document", collection=collection, id=doc_id)
        return await self._request(
            "POST",
            self._documents_path(collection),
            json={"documentId": doc_id or UNIQUE_ID, "data": data},
        )

    async def update(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        logger.info("Updating document", collection=collection, id=doc_id)
        return await self._request(
            "PATCH",
            f"{self._documents_path(collection)}/{doc_id}",
            json={"data": data},
        )

    async def delete(self, collection: str, doc_id: str) -> None:
        logger.info("Deleting document", collection=collection, id=doc_id)
        await self._request("DELETE", f"{self._documents_path(collection)}/{doc_id}")

    def _files_path(self) -> str:
        return f"/storage/buckets/{self.config.bucket_id}/files"

    async def upload_file(
        self, file_name: str, content: bytes, content_type: str
    ) -> str:
        data = await self._request(
            "POST",
            self._files_path(),
            data={"fileId": UNIQUE_ID},
            files={"file": (file_name, content, content_type)},
        )
        logger.info("File uploaded", file_name=file_name, file_id=data["$id"])
        return data["$id"]

    def get_file_url(self, file_id: str) -> str:
        return (
            f"{self.base_url}{self._files_path()}/{file_id}/view"
            f"?project={self.config.project_id}"
        )

    async def delete_file(self, file_id: str) -> None:
        await self._request("DELETE", f"{self._files_path()}/{file_id}")

    async def invoke_function(
        self, function_id: str, payload: dict[str, Any]
    ) -> EmailResult:
        """Run an Appwrite function synchronously and parse its envelope."""
        execution = await self._request(
            "POST",
            f"/functions/{function_id}/executions",
            json={"body": orjson.dumps(payload).decode(), "async": False},
        )
        if not isinstance(execution, dict):
            raise BackendError("Appwrite error: empty function execution response")
        raw = execution.get("responseBody") or execution.get("response") or ""
        return parse_envelope(raw, execution.get("status", "unknown"))


def parse_envelope(raw: str | bytes, status: str = "unknown") -> EmailResult:
    """Parse the JSON envelope returned by the email function."""
    try:
        data = orjson.loads(raw)
    except (orjson.JSONDecodeError, TypeError):
        logger.warning("Unparsable function response", status=status)
        return EmailResult(
            success=False,
            message=f"Couldn't parse function response (status: {status})",
        )
    if not isinstance(data, dict):
        return EmailResult(success=False, message="Unexpected function response")
    return EmailResult(
        success=bool(data.get("success")),
        message=str(data.get("message") or data.get("error") or ""),
        id=str(data["id"]) if data.get("id") is not None else None,
    )
