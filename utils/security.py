"""Security helpers for headers, input sanitation, and auth utilities."""
import html
import time
from typing import Mapping

from flask import request


def sanitize_input(data: Mapping) -> dict:
    """Return an escaped, whitespace-trimmed copy of query/form data."""
    sanitized = {}
    for key, value in data.items():
        sanitized[html.escape(str(key))] = html.escape(str(value).strip())
    return sanitized


def apply_security_headers(response, force_https: bool = False):
    """Apply security headers suitable for a JSON API that also serves uploaded media."""
    csp = (
        "default-src 'self'; "
        "img-src 'self' data: blob:; "
        "media-src 'self' blob:; "
        "script-src 'self' https://cdn.jsdelivr.net; "
        "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
        "frame-ancestors 'self';"
    )
    response.headers.setdefault("Content-Security-Policy", csp)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(self), microphone=(), camera=()")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


def password_meets_policy(password: str) -> tuple[bool, str | None]:
    """Enforce a sane password baseline for local accounts."""
    if len(password) < 12:
        return False, "Password must be at least 12 characters long."
    if password.lower() == password or password.upper() == password:
        return False, "Use a mix of upper and lower case characters."
    if not any(c.isdigit() for c in password):
        return False, "Include at least one digit."
    if not any(c in "!@#$%^&*()-_=+[]{}|;:,.<>?/" for c in password):
        return False, "Include at least one symbol."
    return True, None


# In-process attempt windows keyed by IP and email; swap for a shared cache when running multiple workers.
# Each entry is (attempts, window start) and expires `window` seconds after its first attempt.
_attempts: dict[str, tuple[int, float]] = {}
_clock = time.monotonic


def _prune(now: float, window: float) -> None:
    for key in [k for k, (_, started) in _attempts.items() if now - started >= window]:
        del _attempts[key]


def track_attempt(key: str, limit: int = 10, window: float = 900) -> bool:
    """Count an attempt for `key` and report whether it is still within `limit` for the current window."""
    now = _clock()
    _prune(now, window)
    count, started = _attempts.get(key, (0, now))
    if count >= limit:
        return False
    _attempts[key] = (count + 1, started)
    return True


def reset_attempts(key: str) -> None:
    _attempts.pop(key, None)
