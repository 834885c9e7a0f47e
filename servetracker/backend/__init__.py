"""Remote backend factory."""

from servetracker.models import BackendConfig

from .appwrite import AppwriteBackend
from .base import Backend
from .legacy import LegacyAPIBackend


def get_backend(config: BackendConfig) -> Backend:
    """Get the configured remote backend.

    Raises:
        ValueError: If an unknown backend kind is configured
    """
    if config.kind == "appwrite":
        return AppwriteBackend(config)
    elif config.kind == "legacy":
        return LegacyAPIBackend(config)
    else:
        raise ValueError(
            f"Unknown backend: {config.kind}. Supported backends: appwrite, legacy"
        )


__all__ = ["Backend", "AppwriteBackend", "LegacyAPIBackend", "get_backend"]
