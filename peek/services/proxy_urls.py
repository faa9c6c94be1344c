"""Rewrite upstream media URLs into local proxy URLs.

Clients never see an upstream origin or API key. Every asset URL becomes

    /api/proxy/stash?path=<encoded path+query>&instanceId=<instance>

and the proxy endpoint resolves the instance and re-attaches credentials.
"""

from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from peek.config import get_settings

settings = get_settings()

# Same safe set as JavaScript's encodeURIComponent
_URI_COMPONENT_SAFE = "-_.!~*'()"


def strip_api_key(url: str | None) -> str | None:
    """Remove the apikey query parameter from a URL or path."""
    if not url:
        return url
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k.lower() != "apikey"]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def to_proxy_url(url: str | None, instance_id: str | None = None) -> str | None:
    """Proxy URL for an upstream asset. Proxy URLs and empty values pass through."""
    if not url:
        return url
    base = settings.proxy_base_path
    if url.startswith(base):
        return url

    url = strip_api_key(url)
    if url.startswith("http://") or url.startswith("https://"):
        parts = urlsplit(url)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
    else:
        path = url

    proxy = f"{base}?path={quote(path, safe=_URI_COMPONENT_SAFE)}"
    if instance_id:
        proxy += f"&instanceId={quote(instance_id, safe=_URI_COMPONENT_SAFE)}"
    return proxy


def proxy_streams(streams: list[dict] | None, instance_id: str | None) -> list[dict]:
    """Rewrite the url of every stream entry."""
    result = []
    for stream in streams or []:
        entry = dict(stream)
        entry["url"] = to_proxy_url(entry.get("url"), instance_id)
        result.append(entry)
    return result
