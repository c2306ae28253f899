"""
Header helpers.

Header names are lowercase everywhere inside gracefulhttp. Repeated request
headers are joined with ", " (RFC 7230 section 3.2.2).

When two header sets are composed, most names are simply overridden by the
later set, but list-valued ones are merged without duplicates:

    compose_response_headers({"vary": "origin"}, {"vary": "accept, origin"})
    # {"vary": "origin, accept"}
"""

from typing import Any, Dict, Iterable, List, Mapping, Tuple

_LIST_VALUED = {
    "accept",
    "accept-charset",
    "accept-language",
    "access-control-allow-headers",
    "access-control-allow-methods",
    "access-control-allow-origin",
    # content-type is NOT list-valued, see https://github.com/ninenines/cowboy/issues/1230
    "vary",
}


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def compose_header_values(value: str, next_value: str) -> str:
    merged: List[str] = []
    for part in _split(value) + _split(next_value):
        if part not in merged:
            merged.append(part)
    return ", ".join(merged)


def normalize_headers(headers: Mapping[str, Any]) -> Dict[str, str]:
    """Lowercase names and stringify values (booleans become "true"/"false")."""
    normalized: Dict[str, str] = {}
    for name, value in headers.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        normalized[name.lower()] = str(value)
    return normalized


def compose_response_headers(*header_sets: Mapping[str, Any]) -> Dict[str, str]:
    composed: Dict[str, str] = {}
    for headers in header_sets:
        for name, value in normalize_headers(headers).items():
            if name in _LIST_VALUED and name in composed:
                composed[name] = compose_header_values(composed[name], value)
            else:
                composed[name] = value
    return composed


def headers_from_pairs(pairs: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Build a request header mapping from raw (name, value) pairs."""
    headers: Dict[str, str] = {}
    for name, value in pairs:
        name = name.strip().lower()
        value = value.strip()
        if name in headers:
            headers[name] += ", " + value
        else:
            headers[name] = value
    return headers
