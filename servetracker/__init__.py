"""ServeTracker: process serving case management client."""

from servetracker.models import (
    Case,
    CaseStatus,
    Client,
    ClientDocument,
    Coordinates,
    ServeAttempt,
    ServeStatus,
    SyncState,
)

__version__ = "0.1.0"

__all__ = [
    "Case",
    "CaseStatus",
    "Client",
    "ClientDocument",
    "Coordinates",
    "ServeAttempt",
    "ServeStatus",
    "SyncState",
]
