"""
auth/redirects.py -- Post-authentication redirect resolution.

Every callbackUrl that arrives from the browser is untrusted and goes through
resolve_redirect() before it reaches a Location header. The function is an
allow-list: a target is returned only if it is recognized as a sign-in page,
a same-site relative path, or an absolute URL on the app's own origin.
Everything else -- other origins, garbage, empty strings, bare "?x" or "#x"
fragments -- collapses to the home page.

Layer rule: pure functions, stdlib only.
"""

from __future__ import annotations

from urllib.parse import urlsplit

SIGNIN_PATH = "/auth/signin"

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(url: str) -> str | None:
    """Return "scheme://host[:port]" for an absolute http(s) URL, else None.

    Host is lowercased and the scheme's default port dropped, so
    "HTTP://Example.com:80/x" and "http://example.com" share an origin.
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None
    origin = f"{scheme}://{parts.hostname.lower()}"
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        origin += f":{port}"
    return origin


def _is_signin_target(url: str, base_url: str) -> bool:
    """True for the sign-in page itself, its sub-paths, and its query or fragment forms."""
    absolute = f"{base_url}{SIGNIN_PATH}"
    for prefix in (SIGNIN_PATH, absolute):
        if url == prefix or url.startswith((prefix + "/", prefix + "?", prefix + "#")):
            return True
    return False


def resolve_redirect(url: str, base_url: str) -> str:
    """Return a safe redirect destination for url, relative to base_url.

    Examples (base_url="http://x"):
        "/auth/signin"        -> "/auth/signin"
        "/auth/signin/github" -> "/auth/signin/github"
        "http://x"            -> "http://x/"
        "/dash"               -> "http://x/dash"
        "http://x/dash"       -> "http://x/dash"
        "https://evil.com/p"  -> "http://x/"
        "not-a-url", "", "?a" -> "http://x/"
    """
    base_url = base_url.rstrip("/")
    home = f"{base_url}/"
    if not url:
        return home

    if _is_signin_target(url, base_url):
        return url

    if url == base_url:
        return home

    # Prefixing keeps even "//host/p" on our origin: "http://x//host/p".
    if url.startswith("/"):
        return f"{base_url}{url}"

    target_origin = _origin(url)
    if target_origin is not None and target_origin == _origin(base_url):
        return url

    return home
