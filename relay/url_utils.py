"""
URL helpers for tunnel and websocket endpoints.

A tunnel URL is whatever public address forwards to the relay (for example
a trycloudflare.com host); clients turn it into the websocket endpoint.
"""

from __future__ import annotations

from urllib.parse import SplitResult, urlsplit, urlunsplit

VALID_TUNNEL_SCHEMES = ("http", "https", "ws", "wss")
WS_SCHEMES = ("ws", "wss")
SECURE_SCHEMES = ("https", "wss")
_TO_WS = {"http": "ws", "https": "wss"}
_TO_HTTP = {"ws": "http", "wss": "https"}


def _parse(url: str) -> SplitResult | None:
    try:
        parsed = urlsplit(url.strip())
        # accessing .port validates it
        parsed.port  # noqa: B018
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return parsed


def is_valid_url(url: str) -> bool:
    return _parse(url) is not None


def is_valid_tunnel_url(url: str) -> bool:
    parsed = _parse(url)
    return parsed is not None and parsed.scheme.lower() in VALID_TUNNEL_SCHEMES


def is_valid_websocket_url(url: str) -> bool:
    parsed = _parse(url)
    return parsed is not None and parsed.scheme.lower() in WS_SCHEMES


def is_secure_url(url: str) -> bool:
    parsed = _parse(url)
    return parsed is not None and parsed.scheme.lower() in SECURE_SCHEMES


def normalize_url(url: str) -> str:
    """Lower-case the scheme and drop trailing slashes from the path."""
    parsed = _parse(url)
    if parsed is None:
        return url
    path = parsed.path.rstrip("/")
    return urlunsplit(parsed._replace(scheme=parsed.scheme.lower(), path=path))


def _swap_scheme(url: str, mapping: dict[str, str]) -> str:
    parsed = _parse(url)
    if parsed is None:
        return url
    scheme = parsed.scheme.lower()
    return urlunsplit(parsed._replace(scheme=mapping.get(scheme, scheme)))


def http_to_ws(url: str) -> str:
    return _swap_scheme(url, _TO_WS)


def ws_to_http(url: str) -> str:
    return _swap_scheme(url, _TO_HTTP)


def get_hostname(url: str) -> str:
    parsed = _parse(url)
    return (parsed.hostname or "") if parsed else ""


def get_port(url: str) -> int | None:
    parsed = _parse(url)
    return parsed.port if parsed else None


def get_path(url: str) -> str:
    parsed = _parse(url)
    if parsed is None:
        return ""
    return parsed.path or "/"


def build_websocket_url(base: str, path: str | None = None) -> str:
    """Turn an http(s)/ws(s) base into a websocket URL, joining ``path``."""
    parsed = _parse(http_to_ws(base))
    if parsed is None:
        return base
    joined = parsed.path.rstrip("/")
    if path:
        joined += path if path.startswith("/") else f"/{path}"
    return urlunsplit(parsed._replace(path=joined))


def is_localhost(url: str) -> bool:
    return get_hostname(url) in ("localhost", "127.0.0.1", "::1")


def is_trycloudflare_url(url: str) -> bool:
    return get_hostname(url).endswith(".trycloudflare.com")
