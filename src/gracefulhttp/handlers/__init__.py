"""
Ready-made request handlers.

    serve_file()                   static files with etag / mtime caching
    internal_error_to_response()   the 500 page for handlers that raised
"""

from .internal_error import internal_error_to_response
from .static import convert_file_system_error, serve_file

__all__ = [
    "serve_file",
    "convert_file_system_error",
    "internal_error_to_response",
]
