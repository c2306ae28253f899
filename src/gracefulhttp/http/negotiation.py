"""
Content negotiation (Accept / Accept-Encoding).

    negotiate_content_type(request_headers, ["text/html", "application/json"])
    negotiate_content_encoding(request_headers, ["br", "gzip", "identity"])
    accepts_content_type("text/*;q=0.5", "text/css")   # True

Quality values come from the ";q=" parameter (default 1). When several
available values match with the same quality, the first one listed wins.
"""

from typing import Callable, List, Mapping, NamedTuple, Optional, Sequence


class Accepted(NamedTuple):
    value: str
    quality: float


def parse_accept_header(header: str) -> List[Accepted]:
    """Parse "a/b;q=0.8, c/d" into entries sorted by quality, highest first."""
    entries: List[Accepted] = []
    for raw in header.split(","):
        parts = [part.strip() for part in raw.split(";")]
        value = parts[0]
        if not value:
            continue
        quality = 1.0
        for param in parts[1:]:
            name, _, param_value = param.partition("=")
            if name.strip() == "q":
                try:
                    quality = float(param_value)
                except ValueError:
                    quality = 0.0
        entries.append(Accepted(value, quality))
    entries.sort(key=lambda entry: entry.quality, reverse=True)
    return entries


def _type_matches(content_type: str, pattern: str) -> bool:
    type_, _, subtype = content_type.partition("/")
    pattern_type, _, pattern_subtype = pattern.partition("/")
    if pattern_type not in ("*", type_):
        return False
    return pattern_subtype in ("*", subtype)


def _apply_negotiation(
    availables: Sequence[str],
    accepteds: Sequence[Accepted],
    acceptable: Callable[[Accepted, str], bool],
) -> Optional[str]:
    best: Optional[str] = None
    best_quality = 0.0
    for available in availables:
        for accepted in accepteds:
            if accepted.quality > best_quality and acceptable(accepted, available):
                best = available
                best_quality = accepted.quality
    return best


def negotiate_content_type(headers: Mapping[str, str], available: Sequence[str]) -> Optional[str]:
    accept = headers.get("accept")
    if not accept:
        return None
    return _apply_negotiation(
        available,
        parse_accept_header(accept),
        lambda accepted, content_type: _type_matches(content_type.split(";")[0].strip(), accepted.value),
    )


def _normalize_encoding(encoding: str) -> str:
    return "brotli" if encoding == "br" else encoding


def negotiate_content_encoding(headers: Mapping[str, str], available: Sequence[str]) -> Optional[str]:
    accept_encoding = headers.get("accept-encoding")
    if not accept_encoding:
        return None
    return _apply_negotiation(
        available,
        parse_accept_header(accept_encoding),
        lambda accepted, encoding: accepted.value == "*"
        or _normalize_encoding(accepted.value) == _normalize_encoding(encoding),
    )


def accepts_content_type(accept_header: Optional[str], content_type: str) -> bool:
    if not isinstance(accept_header, str):
        return False
    bare = content_type.split(";")[0].strip()
    return any(
        _type_matches(bare, accepted.value)
        for accepted in parse_accept_header(accept_header)
        if accepted.quality > 0
    )
