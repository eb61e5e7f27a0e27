"""Log guard utilities.

safe_kv() blocks forbidden keys at the call site so that credentials never
reach the log stream.

Never-log policy:
- Session tokens and session cookies
- Merge tickets
- OAuth authorization codes, state tokens, access/refresh/id tokens
- Client secrets and AUTH_SECRET

Allowed (with suffix):
- _sha256, _hash: hash of a value
- _length, _chars: length of a value
"""

import hashlib
import os

FORBIDDEN_KEYS = frozenset(
    {
        "token",
        "ticket",
        "merge_token",
        "session_token",
        "access_token",
        "refresh_token",
        "id_token",
        "code",
        "state",
        "secret",
        "client_secret",
        "password",
        "cookie",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def hash_text(value: str) -> str:
    """SHA-256 hex digest of a string, for log correlation without exposure."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _has_redacted_suffix(key: str) -> bool:
    """Check if key ends with a recognized redacted suffix."""
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Validate that no forbidden keys are present unless already redacted.

    Raises ValueError in local/test environments if a forbidden key is used
    without a redacted suffix. In production, logs a warning instead.

    Usage:
        logger.info("merge.completed", **safe_kv(
            provider="github",
            ticket_sha256=hash_text(ticket),   # OK: _sha256 suffix
            # ticket=ticket,                   # BLOCKED: forbidden key
        ))

    Args:
        _env: Override for STASH_ENV (test-only). If None, reads from env.
        **kwargs: Keyword arguments to validate and return.

    Returns:
        The same kwargs dict, after validation.

    Raises:
        ValueError: In local/test, if a forbidden key is used without redacted suffix.
    """
    violations = [
        key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)
    ]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("STASH_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        else:
            import structlog

            _logger = structlog.get_logger("stash.services.redact")
            _logger.warning("safe_kv_violation", forbidden_keys=violations)
            for key in violations:
                kwargs.pop(key)

    return kwargs
