from __future__ import annotations

from collections.abc import Iterable


def set_cookie_headers(response) -> list[str]:
    """
    Returns every raw Set-Cookie header of a requests.Response, one entry per header.

    requests folds repeated headers into one comma-joined string, which is ambiguous
    (Expires values contain commas), so the urllib3 raw headers are read instead.
    """
    raw_headers = getattr(getattr(response, "raw", None), "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        return list(raw_headers.getlist("Set-Cookie"))

    folded = response.headers.get("Set-Cookie") if response.headers else None
    return [folded] if folded else []


class CookieJar:
    """
    What it does:
    - Minimal per-session cookie store for a single portal origin.

    Behavior:
    - apply_set_cookie(): keeps only the leading `name=value` segment (attributes are ignored),
      splitting on the first "=" so values containing "=" survive; last write wins.
    - header_value(): renders "a=1; b=2" for the Cookie request header.
    - repr()/str() only ever expose the number of cookies.
    """

    def __init__(self) -> None:
        self._cookies: dict[str, str] = {}

    def apply_set_cookie(self, headers: Iterable[str]) -> None:
        for header in headers:
            cookie_part = header.split(";", 1)[0].strip()
            if not cookie_part:
                continue

            name, sep, value = cookie_part.partition("=")
            name = name.strip()
            if not sep or not name:
                continue

            self._cookies[name] = value

    def apply_response(self, response) -> None:
        self.apply_set_cookie(set_cookie_headers(response))

    def header_value(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self._cookies.items())

    def clear(self) -> None:
        self._cookies.clear()

    def __len__(self) -> int:
        return len(self._cookies)

    def __contains__(self, name: object) -> bool:
        return name in self._cookies

    def __repr__(self) -> str:
        return f"CookieJar({len(self._cookies)} cookies)"

    __str__ = __repr__
