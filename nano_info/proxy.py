"""Routing of outbound provider calls through a relay endpoint.

The relay forwards the request verbatim, bearer header included, and streams
the origin's response back unmodified.
"""

from typing import Literal, Optional
from urllib.parse import quote

ProxyMode = Literal["direct", "remote", "same_origin"]

PROXY_PATH = "/proxy"
DEFAULT_PROXY_HOST = "https://nano-info.aizhi.site"

# Characters encodeURIComponent leaves untouched besides alphanumerics.
_URI_COMPONENT_SAFE = "-_.!~*'()"


class ProxyAdapter:
    """Wraps target URLs for the configured deployment mode.

    ``remote`` points at a relay on a fixed host. ``same_origin`` yields a
    relay path relative to the serving origin; ``host`` is then used as the
    HTTP client's base URL when the client builds its own connection.
    ``direct`` skips the relay.
    """

    def __init__(self, mode: ProxyMode = "direct", host: Optional[str] = None):
        if mode not in ("direct", "remote", "same_origin"):
            raise ValueError(f"Unknown proxy mode: {mode}")
        if mode == "remote" and host is None:
            host = DEFAULT_PROXY_HOST
        self.mode = mode
        self.host = (host or "").rstrip("/")

    @property
    def client_base_url(self) -> str:
        return self.host if self.mode == "same_origin" else ""

    def wrap(self, target_url: str) -> str:
        if self.mode == "direct":
            return target_url
        query = f"{PROXY_PATH}?url={quote(target_url, safe=_URI_COMPONENT_SAFE)}"
        if self.mode == "remote":
            return f"{self.host}{query}"
        return query

    def __repr__(self) -> str:
        return f"ProxyAdapter(mode={self.mode!r}, host={self.host!r})"
