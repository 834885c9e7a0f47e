"""Developer diagnostics.

Checks run by ``servetracker diagnose``: backend reachability and collection
counts, local mirror contents, and optionally a test email through the relay
function.
"""

from dataclasses import dataclass
from datetime import datetime

import structlog

from servetracker.backend.base import Backend
from servetracker.exceptions import BackendError
from servetracker.mirror import MirrorStore
from servetracker.models import EmailMessage
from servetracker.notifications import Notifier

logger = structlog.get_logger()


@dataclass
class CheckResult:
    """Outcome of one diagnostic check."""

    name: str
    ok: bool
    detail: str


async def check_backend(backend: Backend) -> list[CheckResult]:
    results = []
    try:
        clients = await backend.list_clients()
        results.append(
            CheckResult("backend reachable", True, f"{backend.name}: {len(clients)} clients")
        )
    except BackendError as e:
        return [CheckResult("backend reachable", False, str(e))]

    try:
        serves = await backend.list_serve_attempts()
        results.append(CheckResult("serve attempts", True, f"{len(serves)} records"))
    except BackendError as e:
        results.append(CheckResult("serve attempts", False, str(e)))
    return results


def check_mirror(mirror: MirrorStore) -> CheckResult:
    clients = mirror.load_clients()
    serves = mirror.load_serves()
    return CheckResult(
        "local mirror",
        True,
        f"{len(clients)} clients, {len(serves)} serve attempts in {mirror.db_path}",
    )


async def check_email(notifier: Notifier, recipient: str) -> CheckResult:
    sent_at = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    result = await notifier.send(
        EmailMessage(
            to=recipient,
            subject=f"ServeTracker Email Diagnostic - {sent_at}",
            body=(
                "<h1>ServeTracker Email Diagnostic Test</h1>"
                f"<p>This is a test email sent at {sent_at}.</p>"
            ),
        )
    )
    return CheckResult("email relay", result.success, result.message)


async def run_diagnostics(
    backend: Backend,
    mirror: MirrorStore,
    notifier: Notifier | None = None,
    email_recipient: str | None = None,
) -> list[CheckResult]:
    """Run all diagnostic checks and return their results."""
    results = await check_backend(backend)
    results.append(check_mirror(mirror))
    if notifier is not None and email_recipient:
        results.append(await check_email(notifier, email_recipient))

    for result in results:
        logger.info("Diagnostic check", name=result.name, ok=result.ok, detail=result.detail)
    return results
