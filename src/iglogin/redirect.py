"""Map a redirect URL to the authorization outcome it carries.

Instagram returns implicit-flow tokens in the URL fragment
(``#access_token=...``) and authorization codes in the query string,
sometimes followed by a stray ``#_`` fragment that is not part of the
code (``?code=AQD...#_``). :func:`parse` accepts either shape.
"""

from __future__ import annotations

import re
from urllib.parse import parse_qsl

from iglogin.models import AccessToken, AuthorizationCode, Failure, RedirectOutcome

_PAYLOAD_RE = re.compile(r"[#?](.*)", re.DOTALL)


def clean_code(code: str) -> str:
    """Strip every literal ``#_`` from an authorization code."""
    return code.replace("#_", "")


def decode_payload(url: str) -> dict[str, str]:
    """Decode the part of *url* after the first ``#`` or ``?``.

    Repeated keys keep their first value and blank values are kept, so
    ``?error=&error=x`` yields ``{"error": ""}``.

    Args:
        url: Full URL as reported by the rendering surface.

    Returns:
        The decoded key/value pairs in the order they appear. Empty when
        the URL has neither a query string nor a fragment.
    """
    match = _PAYLOAD_RE.search(url)
    if not match:
        return {}
    result: dict[str, str] = {}
    for key, value in parse_qsl(match.group(1), keep_blank_values=True):
        result.setdefault(key, value)
    return result


def parse(url: str) -> RedirectOutcome:
    """Classify a redirect URL.

    First match wins: a non-empty ``access_token`` gives an
    :class:`AccessToken`, ``code`` gives an :class:`AuthorizationCode`,
    anything else a :class:`Failure` carrying the decoded mapping. An empty
    ``code`` is still a code; the controller reports it as a failure.

    Example::

        >>> parse("https://example.com/cb#access_token=T&other=1")
        AccessToken(token='T', raw={'access_token': 'T', 'other': '1'})
        >>> parse("https://example.com/cb?code=ABC#_123")
        AuthorizationCode(code='ABC123')
    """
    raw = decode_payload(url)
    if raw.get("access_token"):
        return AccessToken(token=raw["access_token"], raw=raw)
    if "code" in raw:
        return AuthorizationCode(code=clean_code(raw["code"]))
    return Failure(raw=raw)
