"""Authentication helpers."""

from typing import Any, Optional

from .config import config
from .exceptions import DeconfigAuthenticationError
from .output import OutputFormatter


def build_auth_headers(api_key: Optional[str] = None) -> dict[str, str]:
    """Build request headers for the remote store.

    Args:
        api_key: Explicit API key (falls back to the configured key)

    Returns:
        Header mapping with a bearer token

    Raises:
        DeconfigAuthenticationError: If no key is available
    """
    key = api_key or config.api_key
    if not key:
        raise DeconfigAuthenticationError(
            "No credentials found. Run 'pydeconfig init' or set DECONFIG_API_KEY."
        )
    return {"Authorization": f"Bearer {key}"}


def require_api_key(ctx: Any, out: OutputFormatter) -> str:
    """Return the API key for a CLI command or exit with a hint."""
    api_key = ctx.obj.get("api_key") or config.api_key
    if not api_key:
        out.error("API key not configured.")
        out.info("Run 'pydeconfig init' to configure your API key")
        ctx.exit(1)
    return api_key
