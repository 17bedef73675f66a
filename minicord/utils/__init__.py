"""Utility functions for minicord."""

from minicord.utils.helpers import ensure_dir, get_data_path, mask_secret, redact_url

__all__ = ["ensure_dir", "get_data_path", "mask_secret", "redact_url"]
