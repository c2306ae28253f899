"""
=============================================================================
CONTENT TYPE DETECTION
=============================================================================

serve_file() needs a Content-Type for every file it sends. The table maps a
content type to the file extensions that carry it; callers can pass their
own table (same shape) to serve_file(content_type_map=...).

    "text/css": ["css"]  →  style.css is served as text/css

Anything not in the table falls back to the standard library's mimetypes,
then to application/octet-stream ("binary, no idea what this is").

=============================================================================
"""

import mimetypes
from pathlib import PurePath
from typing import Dict, List, Mapping, Optional, Sequence, Union

DEFAULT_CONTENT_TYPE_MAP: Dict[str, List[str]] = {
    # text
    "text/html": ["html", "htm"],
    "text/css": ["css"],
    "text/javascript": ["js", "cjs", "mjs"],
    "text/plain": ["txt"],
    "text/markdown": ["md"],
    "text/csv": ["csv"],
    "text/cache-manifest": ["appcache"],
    # data
    "application/json": ["json", "map"],
    "application/importmap+json": ["importmap"],
    "application/manifest+json": ["webmanifest"],
    "application/xml": ["xml"],
    "application/wasm": ["wasm"],
    "application/pdf": ["pdf"],
    "application/zip": ["zip"],
    "application/gzip": ["gz"],
    # images
    "image/png": ["png"],
    "image/jpeg": ["jpg", "jpeg"],
    "image/gif": ["gif"],
    "image/svg+xml": ["svg", "svgz"],
    "image/x-icon": ["ico"],
    "image/webp": ["webp"],
    "image/avif": ["avif"],
    # fonts
    "font/woff": ["woff"],
    "font/woff2": ["woff2"],
    "font/ttf": ["ttf"],
    "font/otf": ["otf"],
    # media
    "audio/mpeg": ["mp3"],
    "audio/ogg": ["ogg"],
    "video/mp4": ["mp4"],
    "video/webm": ["webm"],
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"

_TEXT_LIKE = {
    "application/json",
    "application/xml",
    "application/importmap+json",
    "application/manifest+json",
    "image/svg+xml",
}


def _extension_index(content_type_map: Mapping[str, Sequence[str]]) -> Dict[str, str]:
    index: Dict[str, str] = {}
    for content_type, extensions in content_type_map.items():
        for extension in extensions:
            index.setdefault(extension.lower(), content_type)
    return index


_DEFAULT_INDEX = _extension_index(DEFAULT_CONTENT_TYPE_MAP)


def path_to_content_type(
    path: Union[str, PurePath],
    content_type_map: Optional[Mapping[str, Sequence[str]]] = None,
    default: str = DEFAULT_CONTENT_TYPE,
) -> str:
    """
    Content type for path, from its extension.

    >>> path_to_content_type("dist/main.js")
    'text/javascript'
    >>> path_to_content_type("archive.unknownext")
    'application/octet-stream'
    """
    index = _DEFAULT_INDEX if content_type_map is None else _extension_index(content_type_map)
    extension = PurePath(path).suffix.lower().lstrip(".")
    if extension in index:
        return index[extension]
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed or default


def is_text_type(content_type: str) -> bool:
    bare = content_type.split(";")[0].strip()
    return bare.startswith("text/") or bare in _TEXT_LIKE
