"""
Default response for a request handler that raised.

The body is negotiated from the request's accept header: an HTML page for
browsers, JSON for everything else. Error details (type, message,
traceback) are only included when the server runs with
send_server_internal_error_details=True; never enable that in production.
"""

import html
import json
import traceback
from typing import Any, Dict

from ..http.negotiation import negotiate_content_type
from ..http.request import Request
from ..http.response import Response

_DETAILS_DISABLED = (
    "<p>Details not available: to enable them server must be started with "
    "send_server_internal_error_details=True.</p>"
)


def _error_data(error: BaseException, send_details: bool) -> Dict[str, Any]:
    data: Dict[str, Any] = {"code": getattr(error, "code", None) or "UNKNOWN_ERROR"}
    if send_details:
        data["type"] = type(error).__name__
        data["message"] = str(error)
        data["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return data


def _html_body(error: BaseException, send_details: bool) -> str:
    if send_details:
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        details = f"<pre>{html.escape(stack)}</pre>"
    else:
        details = _DETAILS_DISABLED
    return f"""<!DOCTYPE html>
<html>
  <head>
    <title>Internal server error</title>
    <meta charset="utf-8" />
    <link rel="icon" href="data:," />
  </head>

  <body>
    <h1>Internal server error</h1>
    <p>Code inside server has raised an error.</p>
    <details>
      <summary>See internal error details</summary>
      {details}
    </details>
  </body>
</html>"""


def internal_error_to_response(
    error: BaseException,
    request: Request,
    send_server_internal_error_details: bool = False,
) -> Response:
    content_type = negotiate_content_type(request.headers, ["text/html", "application/json"])
    if content_type == "text/html":
        body = _html_body(error, send_server_internal_error_details)
    else:
        content_type = "application/json"
        body = json.dumps(_error_data(error, send_server_internal_error_details))
    return Response(
        status=500,
        headers={
            "content-type": content_type,
            "content-length": len(body.encode("utf-8")),
        },
        body=body,
    )
