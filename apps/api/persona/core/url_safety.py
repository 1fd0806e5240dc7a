"""Checks applied before fetching a URL the model asked for.

Only http(s) URLs naming a public host pass. Hostnames are not resolved;
literal IP addresses must be globally routable.
"""

import ipaddress
from urllib.parse import urlsplit

_ALLOWED_SCHEMES = frozenset({"http", "https"})
_BLOCKED_HOSTS = frozenset({"localhost", "metadata", "metadata.google.internal"})
_BLOCKED_SUFFIXES = (".local", ".localhost", ".internal")


def _address_reason(host: str) -> str | None:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return None
    return None if address.is_global else "private_ip"


def is_safe_public_url(url: str) -> tuple[bool, str]:
    """Return (ok, reason); reason is "ok" when the URL may be fetched."""
    try:
        parts = urlsplit(str(url or "").strip())
        host = (parts.hostname or "").rstrip(".").lower()
    except ValueError:
        return False, "malformed_url"

    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        return False, "invalid_scheme"
    if parts.username or parts.password:
        return False, "credentials_in_url"
    if not host:
        return False, "missing_hostname"
    if host in _BLOCKED_HOSTS or host.endswith(_BLOCKED_SUFFIXES):
        return False, "blocked_hostname"

    reason = _address_reason(host)
    if reason is not None:
        return False, reason
    return True, "ok"
