"""Email relay function.

Server side of the notification contract: accepts an ``EmailMessage``,
adds the business address, attaches the optional photo and sends through
Resend. Exposed both as a FastAPI app (``POST /email/send``) and as
``handle_execution`` for BaaS function runtimes, which pass the request body
as a JSON string.
"""

import asyncio
from functools import lru_cache
from typing import Any

import orjson
import resend
import structlog
from fastapi import Depends, FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from servetracker.models import EmailMessage, EmailResult
from servetracker.notifications import build_recipients, strip_data_url

logger = structlog.get_logger()


class RelaySettings(BaseSettings):
    """Relay settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "ServeTracker Email Relay"
    resend_api_key: str = ""
    from_email: str = "ServeTracker <notifications@justlegalsolutions.tech>"
    business_email: str = "info@justlegalsolutions.org"
    cors_origins: list[str] = ["http://localhost:5173"]


@lru_cache
def get_settings() -> RelaySettings:
    """Get cached settings instance."""
    return RelaySettings()


def validate_message(message: EmailMessage) -> str | None:
    """Return an error message if required fields are missing."""
    recipients = [message.to] if isinstance(message.to, str) else message.to
    has_content = message.html or message.body or message.text
    if not any(r.strip() for r in recipients) or not message.subject or not has_content:
        return "Missing required fields (to, subject, or html/body/text)."
    return None


def build_resend_params(message: EmailMessage, settings: RelaySettings) -> dict[str, Any]:
    """Translate an EmailMessage into Resend send parameters."""
    params: dict[str, Any] = {
        "from": settings.from_email,
        "to": build_recipients(message.to, settings.business_email),
        "subject": message.subject,
    }
    html = message.html or message.body
    if html:
        params["html"] = html
    if message.text:
        params["text"] = message.text
    if message.image_data:
        content, image_format = strip_data_url(message.image_data)
        extension = image_format or message.image_format or "jpg"
        params["attachments"] = [
            {"filename": f"serve-photo.{extension}", "content": content}
        ]
    return params


async def send_via_resend(message: EmailMessage, settings: RelaySettings) -> EmailResult:
    """Send one email through Resend and wrap the outcome in an envelope."""
    if not settings.resend_api_key:
        logger.error("RESEND_API_KEY is missing")
        return EmailResult(success=False, message="API key is missing.")

    error = validate_message(message)
    if error:
        return EmailResult(success=False, message=error)

    params = build_resend_params(message, settings)
    logger.info(
        "Relaying email",
        to=params["to"],
        subject=message.subject,
        attachments=len(params.get("attachments", [])),
    )

    resend.api_key = settings.resend_api_key
    try:
        response = await asyncio.to_thread(resend.Emails.send, params)
    except Exception as e:
        logger.error("Resend send failed", subject=message.subject, error=str(e))
        return EmailResult(success=False, message=f"Failed to send email: {e}")

    email_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
    if not email_id:
        logger.error("Unexpected Resend response", response=str(response))
        return EmailResult(
            success=False,
            message="Failed to send email. Unexpected response from Resend API.",
        )

    logger.info("Email relayed", id=email_id, to=params["to"])
    return EmailResult(success=True, message="Email sent successfully.", id=email_id)


async def handle_execution(
    body: str | bytes | dict[str, Any], settings: RelaySettings | None = None
) -> dict[str, Any]:
    """Function-runtime entry point: JSON body in, envelope dict out."""
    settings = settings or get_settings()
    try:
        data = orjson.loads(body) if isinstance(body, (str, bytes)) else body
        message = EmailMessage.model_validate(data)
    except (orjson.JSONDecodeError, PydanticValidationError) as e:
        logger.warning("Invalid relay payload", error=str(e))
        return EmailResult(success=False, message=f"Invalid payload: {e}").model_dump()

    result = await send_via_resend(message, settings)
    return result.model_dump()


def create_app(settings: RelaySettings | None = None) -> FastAPI:
    """Create the relay FastAPI application."""
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.post("/email/send", response_model=EmailResult)
    async def send_email(
        message: EmailMessage,
        response: Response,
        relay_settings: RelaySettings = Depends(get_settings),
    ) -> EmailResult:
        """Send a notification email."""
        error = validate_message(message)
        if error:
            response.status_code = status.HTTP_400_BAD_REQUEST
            return EmailResult(success=False, message=error)

        result = await send_via_resend(message, relay_settings)
        if not result.success:
            response.status_code = status.HTTP_502_BAD_GATEWAY
        return result

    return app
