from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset(
    {
        "fbclid",
        "gclid",
        "mc_cid",
        "mc_eid",
        "ref",
        "ref_src",
        "igshid",
        "_hsenc",
        "_hsmi",
        "yclid",
        "msclkid",
    }
)

_DEFAULT_PORTS = {"http": "80", "https": "443"}


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        result.port  # raises ValueError for an out-of-range port
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def canonicalize_url(url: str) -> str:
    """Normalize a URL into a stable identity for deduplication.

    Lowercases scheme and host, drops default ports, fragments and tracking
    parameters, sorts what is left of the query and strips trailing slashes.
    """
    parsed = urlsplit(url.strip())
    scheme = (parsed.scheme or "https").lower()
    host = (parsed.hostname or "").lower()
    port = parsed.port if parsed.netloc else None
    netloc = host
    if port is not None and str(port) != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{port}"
    if parsed.username:
        userinfo = parsed.username + (f":{parsed.password}" if parsed.password else "")
        netloc = f"{userinfo}@{netloc}"

    path = re.sub(r"/{2,}", "/", parsed.path).rstrip("/")
    pairs = [
        (name, value)
        for name, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(name)
    ]
    query = urlencode(sorted(pairs))
    return urlunsplit((scheme, netloc, path, query, ""))


def clean_content(text: str, max_length: int = 8000) -> str:
    """Collapse whitespace and trim to max length."""
    text = re.sub(r"\s+", " ", text or "").strip()
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def extract_domain(url: str) -> str:
    """Extract domain from URL for display."""
    try:
        return urlparse(url).netloc
    except ValueError:
        return url
