"""Proxy configuration for the httpx client.

The OpenCode server normally runs on the same machine, but the client
honours the standard proxy variables so a remote server behind a
corporate proxy still works:

- HTTPS_PROXY / HTTP_PROXY: proxy URL (either case)
- NO_PROXY: hosts that bypass the proxy (suffix matching)
- OPENCODE_NO_PROXY: hosts that bypass the proxy (exact matching)

Loopback hosts always bypass the proxy.
"""

import logging
import os
import urllib.parse
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

# ============================================================
# Environment Variables
# ============================================================

ENV_HTTPS_PROXY = "HTTPS_PROXY"
ENV_HTTP_PROXY = "HTTP_PROXY"
ENV_NO_PROXY = "NO_PROXY"
ENV_OPENCODE_NO_PROXY = "OPENCODE_NO_PROXY"

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


# ============================================================
# Configuration Functions
# ============================================================

def get_proxy_url() -> Optional[str]:
    """Get proxy URL from environment variables.

    Checks HTTPS_PROXY and HTTP_PROXY (both cases).

    Returns:
        Proxy URL or None if not configured.
    """
    for var in [ENV_HTTPS_PROXY, ENV_HTTPS_PROXY.lower(),
                ENV_HTTP_PROXY, ENV_HTTP_PROXY.lower()]:
        url = os.environ.get(var)
        if url:
            return url
    return None


def _get_opencode_no_proxy_hosts() -> List[str]:
    value = os.environ.get(ENV_OPENCODE_NO_PROXY, "")
    return [h.strip().lower() for h in value.split(",") if h.strip()]


def _get_no_proxy_entries() -> List[str]:
    value = os.environ.get(ENV_NO_PROXY) or os.environ.get(ENV_NO_PROXY.lower(), "")
    return [e.strip().lower() for e in value.split(",") if e.strip()]


def _matches_no_proxy(host: str, port: Optional[int], no_proxy_entry: str) -> bool:
    """Check if a host[:port] matches a single NO_PROXY entry.

    Standard NO_PROXY matching rules:
    - '*' matches everything
    - 'hostname' matches that exact hostname
    - '.domain.com' matches any subdomain of domain.com and domain.com itself
    - 'domain.com' also matches subdomains
    - 'host:port' matches only when both host and port match
    """
    if no_proxy_entry == "*":
        return True

    entry_host = no_proxy_entry
    entry_port = None
    if ":" in no_proxy_entry:
        head, tail = no_proxy_entry.rsplit(":", 1)
        try:
            entry_port = int(tail)
            entry_host = head
        except ValueError:
            pass  # Not a port, treat whole string as host

    if entry_port is not None and port != entry_port:
        return False

    if host == entry_host:
        return True

    if entry_host.startswith("."):
        return host.endswith(entry_host) or host == entry_host[1:]

    return host.endswith("." + entry_host)


def should_bypass_proxy(url: str) -> bool:
    """Check if a URL should bypass the proxy.

    Args:
        url: The URL to check.

    Returns:
        True for loopback hosts and hosts listed in NO_PROXY or
        OPENCODE_NO_PROXY.
    """
    parsed = urllib.parse.urlparse(url)
    host = parsed.hostname
    if not host:
        return False

    host = host.lower()
    if host in LOOPBACK_HOSTS:
        return True

    if host in _get_opencode_no_proxy_hosts():
        return True

    return any(
        _matches_no_proxy(host, parsed.port, entry)
        for entry in _get_no_proxy_entries()
    )


# ============================================================
# httpx Support
# ============================================================

def get_httpx_kwargs(url: str) -> Dict[str, Any]:
    """Get proxy kwargs for an httpx client talking to ``url``.

    Returns:
        Dict with a ``proxy`` key when a proxy applies, ``{"proxy": None,
        "trust_env": False}`` when the URL bypasses it, else empty.
    """
    if should_bypass_proxy(url):
        return {"proxy": None, "trust_env": False}

    proxy_url = get_proxy_url()
    if proxy_url:
        return {"proxy": proxy_url}
    return {}


def get_httpx_async_client(base_url: str, **client_kwargs) -> httpx.AsyncClient:
    """Create an httpx AsyncClient for the server at ``base_url``.

    Args:
        base_url: Server base URL; used both as the client's base URL and
            to decide whether the proxy applies.
        **client_kwargs: Additional kwargs for httpx.AsyncClient. Explicit
            values win over the computed proxy settings.

    Returns:
        Configured httpx.AsyncClient.
    """
    for key, value in get_httpx_kwargs(base_url).items():
        client_kwargs.setdefault(key, value)
    if client_kwargs.get("proxy"):
        logger.debug(f"Using proxy {client_kwargs['proxy']} for {base_url}")
    return httpx.AsyncClient(base_url=base_url, **client_kwargs)


__all__ = [
    "get_httpx_async_client",
    "get_httpx_kwargs",
    "get_proxy_url",
    "should_bypass_proxy",
]
