"""Helpers for resolving the installed storefront-backup version."""
from __future__ import annotations

from functools import lru_cache
from importlib import metadata

_DISTRIBUTION = "storefront-backup"


@lru_cache(maxsize=1)
def get_app_version() -> str:
    """Return the package version recorded in backup manifests.

    Falls back to ``0.0.0`` when running from a source checkout that was never
    installed.
    """

    try:
        return metadata.version(_DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return "0.0.0"


__all__ = ["get_app_version"]
