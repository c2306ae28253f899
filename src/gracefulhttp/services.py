"""
Composing request handlers ("services").

A service is a request handler that may decline: it returns a Response when
it handles the request, NO_RESPONSE or None otherwise. compose_service()
tries services in order and keeps the first response:

    handler = compose_service(serve_api, serve_static_files, not_found)

compose_service_with_timing() does the same with named services and adds
how long each one took to the response's timing, which the server sends as
a server-timing header when send_server_timing is on.
"""

from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple

from .http.request import Request
from .http.response import HandlerResult, Response, compose_response, is_response
from .operation import first_operation_matching
from .server_timing import time_async_function

Service = Callable[[Request], Any]


def service_generated_response(value: Any) -> bool:
    return is_response(value)


def compose_service(*services: Service) -> Callable[[Request], Awaitable[HandlerResult]]:
    async def composed(request: Request) -> Optional[Response]:
        return await first_operation_matching(
            services,
            lambda service: service(request),
            service_generated_response,
        )

    return composed


def compose_service_with_timing(named_services: Mapping[str, Service]) -> Callable[[Request], Awaitable[HandlerResult]]:
    async def composed(request: Request) -> Optional[Response]:
        timing = {}

        async def start(item: Tuple[str, Service]) -> Any:
            name, service = item
            service_timing, value = await time_async_function(name, lambda: service(request))
            timing.update(service_timing)
            return value

        response = await first_operation_matching(named_services.items(), start, service_generated_response)
        if response is None:
            return None
        return compose_response(response, timing={**timing, **response.timing})

    return composed
