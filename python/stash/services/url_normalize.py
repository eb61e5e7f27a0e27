"""URL validation and normalization for saved bookmarks.

- validate_bookmark_url(): Strict validation, raises InvalidRequestError on failure
- normalize_url_for_display(): Returns the normalized form that gets stored

Key behaviors:
- Scheme must be http or https
- Length must be <= 2048 characters
- Host must be present and non-empty
- Userinfo (user:pass@host) is forbidden
- Localhost/private addresses are rejected (127.0.0.1, ::1, localhost, *.local)
- Fragment (#...) is stripped during normalization
- Scheme and host are lowercased during normalization
"""

import ipaddress
import re
from urllib.parse import urlparse, urlunparse

from stash.errors import ApiErrorCode, InvalidRequestError

MAX_URL_LENGTH = 2048

ALLOWED_SCHEMES = {"http", "https"}

# Hostnames to block (case-insensitive)
BLOCKED_HOSTNAMES = {
    "localhost",
}

BLOCKED_HOSTNAME_PATTERNS = [
    re.compile(r".*\.local$", re.IGNORECASE),
    re.compile(r".*\.localhost$", re.IGNORECASE),
]

PRIVATE_IP_RANGES = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),  # Loopback
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("fc00::/7"),  # IPv6 unique local
]


def _is_private_ip(hostname: str) -> bool:
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        # Not an IP address
        return False
    return any(ip in network for network in PRIVATE_IP_RANGES)


def _is_blocked_hostname(hostname: str) -> bool:
    """Check if hostname is blocked.

    Args:
        hostname: The hostname to check (will be lowercased).
    """
    hostname_lower = hostname.lower()

    if hostname_lower in BLOCKED_HOSTNAMES:
        return True

    for pattern in BLOCKED_HOSTNAME_PATTERNS:
        if pattern.match(hostname_lower):
            return True

    return _is_private_ip(hostname_lower)


def _invalid(message: str) -> InvalidRequestError:
    return InvalidRequestError(ApiErrorCode.E_INVALID_URL, message)


def validate_bookmark_url(url: str) -> None:
    """Validate a URL before it is saved.

    Raises:
        InvalidRequestError(E_INVALID_URL): If validation fails.
    """
    if len(url) > MAX_URL_LENGTH:
        raise _invalid(f"URL exceeds maximum length of {MAX_URL_LENGTH} characters")

    try:
        parsed = urlparse(url)
        # Accessing port validates it
        parsed.port
    except ValueError as e:
        raise _invalid("Invalid URL format") from e

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise _invalid("Only http and https URLs can be saved")

    if parsed.username or parsed.password:
        raise _invalid("URLs with credentials (user:pass@host) are not allowed")

    if not parsed.hostname:
        raise _invalid("URL must have a valid hostname")

    if _is_blocked_hostname(parsed.hostname):
        raise _invalid(f"URL hostname '{parsed.hostname}' is not allowed")


def normalize_url_for_display(url: str) -> str:
    """Normalize a validated URL.

    Normalization rules:
    - Lowercase scheme
    - Lowercase host
    - Drop default ports
    - Strip fragment (#...)
    - Preserve path and query
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    hostname = parsed.hostname.lower() if parsed.hostname else ""
    port = parsed.port

    if ":" in hostname:
        hostname = f"[{hostname}]"

    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        netloc = f"{hostname}:{port}"
    else:
        netloc = hostname

    return urlunparse((scheme, netloc, parsed.path or "/", parsed.params, parsed.query, ""))
