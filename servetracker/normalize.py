"""Normalization of remote documents into canonical records.

Remote documents arrive in several shapes: camelCase or snake_case field
names, and an identifier stored as ``id``, ``$id`` (Appwrite) or ``_id``
(legacy MongoDB API). Each canonical field has a list of candidate source
keys in priority order; the first one holding a value wins.
"""

import math
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

import orjson
import structlog
from pydantic import ValidationError as PydanticValidationError

from servetracker.models import (
    Case,
    CaseStatus,
    Client,
    ClientDocument,
    Coordinates,
    ServeAttempt,
    utcnow,
)

logger = structlog.get_logger()

ID_ALIASES = ["id", "$id", "_id"]

CLIENT_FIELDS: dict[str, list[str]] = {
    "name": ["name"],
    "email": ["email"],
    "additional_emails": ["additionalEmails", "additional_emails"],
    "phone": ["phone"],
    "address": ["address"],
    "notes": ["notes"],
    "created_at": ["createdAt", "created_at", "$createdAt"],
}

CASE_FIELDS: dict[str, list[str]] = {
    "case_number": ["caseNumber", "case_number"],
    "case_name": ["caseName", "case_name"],
    "client_id": ["clientId", "client_id"],
    "description": ["description"],
    "status": ["status"],
    "home_address": ["homeAddress", "home_address"],
    "work_address": ["workAddress", "work_address"],
    "created_at": ["createdAt", "created_at", "$createdAt"],
    "updated_at": ["updatedAt", "updated_at", "$updatedAt"],
}

SERVE_FIELDS: dict[str, list[str]] = {
    "client_id": ["clientId", "client_id"],
    "client_name": ["clientName", "client_name"],
    "case_number": ["caseNumber", "case_number"],
    "case_name": ["caseName", "case_name"],
    "attempt_number": ["attemptNumber", "attempt_number"],
    "status": ["status"],
    "notes": ["notes"],
    "coordinates": ["coordinates"],
    "image_data": ["imageData", "image_data"],
    "timestamp": ["timestamp", "$createdAt"],
}

DOCUMENT_FIELDS: dict[str, list[str]] = {
    "client_id": ["clientId", "client_id"],
    "case_number": ["caseNumber", "case_number"],
    "file_path": ["filePath", "file_path"],
    "file_name": ["fileName", "file_name"],
    "file_type": ["fileType", "file_type"],
    "file_size": ["fileSize", "file_size"],
    "description": ["description"],
}


def pick(doc: Mapping[str, Any], candidates: Iterable[str]) -> Any:
    """Return the first non-null value among candidate keys."""
    for key in candidates:
        value = doc.get(key)
        if value is not None:
            return value
    return None


def resolve_id(doc: Mapping[str, Any]) -> str | None:
    """Return the document identifier under any of its aliases."""
    for key in ID_ALIASES:
        value = doc.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _extract(doc: Mapping[str, Any], fields: dict[str, list[str]]) -> dict[str, Any]:
    return {name: pick(doc, candidates) for name, candidates in fields.items()}


def parse_timestamp(value: Any) -> datetime:
    """Parse a timestamp; missing or unreadable values become now (UTC).

    Accepts datetimes, ISO-8601 strings and epoch milliseconds.
    """
    if value is None or value == "":
        return utcnow()

    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        logger.warning("Unreadable timestamp, using now", value=str(value))
        return utcnow()

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _in_range(latitude: float, longitude: float) -> bool:
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def parse_coordinates(value: Any) -> Coordinates | None:
    """Parse coordinates from any of the stored forms.

    Accepted forms are a ``{latitude, longitude}`` mapping, a
    ``Coordinates`` instance, a ``"lat,lon"`` string and a JSON-encoded
    mapping. Anything else, or values out of range, yields None.
    """
    if value is None:
        return None

    if isinstance(value, Coordinates):
        return value if _in_range(value.latitude, value.longitude) else None

    if isinstance(value, str):
        text = value.strip()
        if text.startswith("{"):
            try:
                return parse_coordinates(orjson.loads(text))
            except orjson.JSONDecodeError:
                return None
        parts = text.split(",")
        if len(parts) != 2:
            return None
        latitude, longitude = _as_number(parts[0]), _as_number(parts[1])
    elif isinstance(value, Mapping):
        if "latitude" not in value or "longitude" not in value:
            return None
        latitude = _as_number(value["latitude"])
        longitude = _as_number(value["longitude"])
    else:
        return None

    if latitude is None or longitude is None or not _in_range(latitude, longitude):
        return None
    return Coordinates(latitude=latitude, longitude=longitude)


def has_valid_coordinates(value: Any) -> bool:
    """Check whether a value holds usable GPS coordinates."""
    return parse_coordinates(value) is not None


def format_coordinates(coords: Coordinates) -> str:
    """Format coordinates as degrees with hemisphere letters."""
    lat_dir = "N" if coords.latitude >= 0 else "S"
    lon_dir = "E" if coords.longitude >= 0 else "W"
    return (
        f"{abs(coords.latitude):.6f}° {lat_dir}, "
        f"{abs(coords.longitude):.6f}° {lon_dir}"
    )


def google_maps_url(coords: Coordinates) -> str:
    """Return a Google Maps link for the coordinates."""
    return f"https://www.google.com/maps?q={coords.latitude},{coords.longitude}"


def safe_format_coordinates(value: Any) -> str:
    coords = parse_coordinates(value)
    return format_coordinates(coords) if coords else "No location data"


def safe_google_maps_url(value: Any) -> str:
    coords = parse_coordinates(value)
    return google_maps_url(coords) if coords else "#"


def normalize_client(doc: Mapping[str, Any] | None) -> Client | None:
    """Normalize a raw client document."""
    if not doc:
        return None
    doc_id = resolve_id(doc)
    if doc_id is None:
        logger.warning("Dropping client without id", keys=sorted(doc.keys()))
        return None

    data = _extract(doc, CLIENT_FIELDS)
    data["created_at"] = parse_timestamp(data["created_at"])
    data["additional_emails"] = list(data["additional_emails"] or [])
    return _build(Client, doc_id, data)


def normalize_case(doc: Mapping[str, Any] | None) -> Case | None:
    """Normalize a raw case document."""
    if not doc:
        return None
    doc_id = resolve_id(doc)
    if doc_id is None:
        logger.warning("Dropping case without id", keys=sorted(doc.keys()))
        return None

    data = _extract(doc, CASE_FIELDS)
    data["status"] = parse_case_status(data["status"])
    data["created_at"] = parse_timestamp(data["created_at"])
    data["updated_at"] = parse_timestamp(data["updated_at"])
    return _build(Case, doc_id, data)


def parse_case_status(value: Any) -> CaseStatus:
    """Map a stored status string onto CaseStatus, defaulting to Pending."""
    if isinstance(value, CaseStatus):
        return value
    if isinstance(value, str):
        for status in CaseStatus:
            if status.value.lower() == value.strip().lower():
                return status
    return CaseStatus.PENDING


def normalize_serve(doc: Mapping[str, Any] | None) -> ServeAttempt | None:
    """Normalize a raw serve attempt document."""
    if not doc:
        return None
    doc_id = resolve_id(doc)
    if doc_id is None:
        logger.warning("Dropping serve attempt without id", keys=sorted(doc.keys()))
        return None

    data = _extract(doc, SERVE_FIELDS)
    data["coordinates"] = parse_coordinates(data["coordinates"])
    data["timestamp"] = parse_timestamp(data["timestamp"])
    data["status"] = str(data["status"]) if data["status"] else "unknown"
    data["attempt_number"] = data["attempt_number"] or 1
    return _build(ServeAttempt, doc_id, data)


def normalize_document(doc: Mapping[str, Any] | None) -> ClientDocument | None:
    """Normalize a raw client document metadata record."""
    if not doc:
        return None
    doc_id = resolve_id(doc)
    if doc_id is None:
        logger.warning("Dropping document without id", keys=sorted(doc.keys()))
        return None

    data = _extract(doc, DOCUMENT_FIELDS)
    return _build(ClientDocument, doc_id, data)


def _build(model: type, doc_id: str, data: dict[str, Any]) -> Any:
    fields = {k: v for k, v in data.items() if v is not None}
    try:
        return model(id=doc_id, **fields)
    except PydanticValidationError as e:
        logger.warning(
            "Dropping malformed record",
            model=model.__name__,
            id=doc_id,
            error=str(e),
        )
        return None


NORMALIZERS = {
    "client": normalize_client,
    "case": normalize_case,
    "serve": normalize_serve,
    "document": normalize_document,
}


def normalize_many(kind: str, docs: Iterable[Mapping[str, Any]] | None) -> list:
    """Normalize a batch of documents, dropping the ones that cannot be read."""
    if not docs:
        return []
    normalizer = NORMALIZERS[kind]
    records = [normalizer(doc) for doc in docs]
    return [r for r in records if r is not None]


def add_client_names(
    serves: list[ServeAttempt], clients: list[Client]
) -> list[ServeAttempt]:
    """Fill in client names on serves that only carry the placeholder."""
    names = {c.id: c.name for c in clients}
    result = []
    for serve in serves:
        if serve.client_name == "Unknown Client" and serve.client_id in names:
            serve = serve.model_copy(update={"client_name": names[serve.client_id]})
        result.append(serve)
    return result
