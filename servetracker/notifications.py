"""Serve attempt notification emails.

Bodies are rendered from Jinja2 templates and handed to the email relay
function through the backend. Dispatch is best-effort: every failure comes
back as an ``EmailResult`` with ``success=False`` and is never raised.
"""

import re
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from servetracker.backend.base import Backend
from servetracker.exceptions import BackendError
from servetracker.models import Client, EmailConfig, EmailMessage, EmailResult, ServeAttempt
from servetracker.normalize import parse_coordinates, safe_format_coordinates, safe_google_maps_url

logger = structlog.get_logger()

TEMPLATES_DIR = Path(__file__).parent / "templates"

DATA_URL_PATTERN = re.compile(r"^data:image/([a-zA-Z0-9.+-]+);base64,", re.IGNORECASE)


def format_datetime(value: datetime) -> str:
    """Jinja2 filter for human-readable timestamps."""
    return value.strftime("%m/%d/%Y, %I:%M:%S %p %Z").strip()


@lru_cache
def get_environment() -> Environment:
    """Get the cached Jinja2 environment for email templates."""
    env = Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["datetime"] = format_datetime
    return env


def render(template_name: str, context: dict[str, Any]) -> str:
    return get_environment().get_template(template_name).render(**context)


def build_recipients(to: str | list[str], business_email: str | None) -> list[str]:
    """Return recipients with the business address appended exactly once.

    Duplicates are dropped case-insensitively; order is preserved.
    """
    candidates = [to] if isinstance(to, str) else list(to)
    if business_email:
        candidates.append(business_email)

    seen: set[str] = set()
    recipients = []
    for address in candidates:
        address = (address or "").strip()
        if not address or address.lower() in seen:
            continue
        seen.add(address.lower())
        recipients.append(address)
    return recipients


def strip_data_url(image_data: str) -> tuple[str, str | None]:
    """Strip a ``data:image/<fmt>;base64,`` prefix.

    Returns:
        The bare base64 payload and the image format, if a prefix was present
    """
    match = DATA_URL_PATTERN.match(image_data)
    if not match:
        return image_data, None
    return image_data[match.end():], match.group(1).lower()


def serve_created_body(serve: ServeAttempt, client_name: str, address: str = "") -> str:
    coords = parse_coordinates(serve.coordinates)
    return render(
        "serve_created.html",
        {
            "case_number": serve.case_number,
            "client_name": client_name,
            "timestamp": serve.timestamp,
            "attempt_number": serve.attempt_number,
            "status": serve.status,
            "address": address,
            "notes": serve.notes,
            "coordinates_text": safe_format_coordinates(coords),
            "maps_url": safe_google_maps_url(coords) if coords else None,
        },
    )


def serve_updated_body(serve: ServeAttempt, client_name: str, old_status: str) -> str:
    return render(
        "serve_updated.html",
        {
            "case_number": serve.case_number,
            "client_name": client_name,
            "timestamp": serve.timestamp,
            "old_status": old_status,
            "new_status": serve.status,
            "notes": serve.notes,
        },
    )


def serve_deleted_body(
    serve: ServeAttempt, client_name: str, reason: str | None = None
) -> str:
    return render(
        "serve_deleted.html",
        {
            "case_number": serve.case_number,
            "client_name": client_name,
            "timestamp": serve.timestamp,
            "reason": reason,
        },
    )


class Notifier:
    """Send notification emails through the relay function."""

    def __init__(self, backend: Backend, config: EmailConfig, function_id: str = ""):
        """Initialize the notifier.

        Args:
            backend: Backend used to invoke the relay function
            config: Email section of the configuration
            function_id: Id of the relay function on the backend
        """
        self.backend = backend
        self.config = config
        self.function_id = function_id

    def build_payload(self, message: EmailMessage) -> dict[str, Any]:
        """Build the relay payload: recipients, stripped image, JSON-safe fields."""
        payload = message.model_dump(mode="json", by_alias=True, exclude_none=True)
        payload["to"] = build_recipients(message.to, self.config.business_email)
        if message.image_data:
            image, image_format = strip_data_url(message.image_data)
            payload["imageData"] = image
            payload["imageFormat"] = image_format or message.image_format or "jpeg"
        return payload

    async def send(self, message: EmailMessage) -> EmailResult:
        """Dispatch one email; never raises."""
        if not self.config.enabled:
            logger.info("Email notifications disabled", subject=message.subject)
            return EmailResult(success=False, message="Email notifications disabled")

        payload = self.build_payload(message)
        logger.info(
            "Sending email",
            to=payload["to"],
            subject=message.subject,
            has_image="imageData" in payload,
        )

        try:
            result = await self.backend.invoke_function(self.function_id, payload)
        except BackendError as e:
            logger.error("Email dispatch failed", subject=message.subject, error=str(e))
            return EmailResult(success=False, message=str(e))

        if result.success:
            logger.info("Email sent", subject=message.subject, id=result.id)
        else:
            logger.warning("Email rejected", subject=message.subject, detail=result.message)
        return result

    async def serve_created(
        self, serve: ServeAttempt, client: Client, address: str = ""
    ) -> EmailResult:
        return await self.send(
            EmailMessage(
                to=client.all_emails,
                subject=(
                    f"Process Serve Attempt #{serve.attempt_number}"
                    f" - Case {serve.case_number}"
                ),
                body=serve_created_body(serve, client.name, address),
                image_data=serve.image_data,
                coordinates=serve.coordinates,
                notes=serve.notes,
            )
        )

    async def serve_updated(
        self, serve: ServeAttempt, client: Client, old_status: str
    ) -> EmailResult:
        return await self.send(
            EmailMessage(
                to=client.all_emails,
                subject=f"Serve Attempt Updated - Case {serve.case_number}",
                body=serve_updated_body(serve, client.name, old_status),
                notes=serve.notes,
            )
        )

    async def serve_deleted(
        self, serve: ServeAttempt, client: Client, reason: str | None = None
    ) -> EmailResult:
        return await self.send(
            EmailMessage(
                to=client.all_emails,
                subject=f"Serve Attempt Deleted - Case {serve.case_number}",
                body=serve_deleted_body(serve, client.name, reason),
            )
        )
