"""Utility functions for minicord."""

from pathlib import Path

import httpx

SECRET_QUERY_PARAMS = ("token",)


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the minicord data directory (~/.minicord)."""
    return ensure_dir(Path.home() / ".minicord")


def mask_secret(value: str, keep: int = 4) -> str:
    """Show only the last few characters of a secret."""
    if not value:
        return ""
    if len(value) <= keep:
        return "*" * len(value)
    return "*" * 8 + value[-keep:]


def redact_url(url: str | httpx.URL) -> str:
    """Replace credential query parameters with ``***`` so the URL is safe to log."""
    parsed = httpx.URL(str(url))
    params = parsed.params
    hidden = {k: "***" for k in SECRET_QUERY_PARAMS if k in params}
    if not hidden:
        return str(parsed)
    return str(parsed.copy_merge_params(hidden))
