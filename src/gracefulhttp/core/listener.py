"""
Opening (and reliably closing) the listening socket.

listen() is a stoppable operation: whatever happens to the cancellation
token, a socket that got bound is closed again exactly once.

    operation = listen(token, server, port=0, ip="127.0.0.1")
    port = await operation          # actual port, useful with port=0
    ...
    await operation.stop(reason)    # or: token fires
"""

import asyncio
import logging
import shutil
from typing import Any, Optional

from ..cancellation import CancellationToken
from ..errors import BindError
from ..operation import StoppableOperation, create_stoppable_operation
from .socket_server import SocketServer

logger = logging.getLogger(__name__)


def listen(
    cancellation_token: Optional[CancellationToken],
    server: SocketServer,
    port: int = 0,
    ip: str = "0.0.0.0",
    port_hint: Optional[int] = None,
) -> StoppableOperation:
    """
    Bind server on ip:port (or the first free port from port_hint on).

    Must be called from a running event loop.
    """

    async def start() -> int:
        if port_hint is not None and not port:
            chosen = await find_free_port(port_hint, ip, cancellation_token=cancellation_token)
            return await server.listen(chosen, ip)
        return await server.listen(port, ip)

    async def stop(_port: int, reason: Any) -> None:
        logger.debug(f"closing listening socket ({reason})")
        await server.close()

    return create_stoppable_operation(cancellation_token, start, stop)


async def _port_is_free(port: int, ip: str) -> bool:
    loop = asyncio.get_running_loop()
    try:
        trial = await loop.create_server(asyncio.Protocol, host=ip or None, port=port, reuse_address=True)
    except OSError:
        return False
    trial.close()
    await trial.wait_closed()
    return True


async def find_free_port(
    initial_port: int,
    ip: str = "0.0.0.0",
    min_port: int = 1,
    max_port: int = 65534,
    cancellation_token: Optional[CancellationToken] = None,
) -> int:
    """
    First port >= initial_port that can be bound on ip.

    Raises:
        CancelError: The token fired during the search.
        BindError: No port in [initial_port, max_port] is free.
    """
    if not min_port <= initial_port <= max_port:
        raise ValueError(f"port hint {initial_port} outside {min_port}..{max_port}")
    for candidate in range(initial_port, max_port + 1):
        if cancellation_token is not None:
            cancellation_token.throw_if_requested()
        if await _port_is_free(candidate, ip):
            return candidate
    raise BindError(f"no free port between {initial_port} and {max_port}", port=initial_port, ip=ip)


async def _run(*command: str) -> int:
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    await process.communicate()
    return process.returncode


async def kill_port_owner(port: int) -> bool:
    """
    Kill whatever process listens on port (used with force_port).

    Uses `fuser` when available, `lsof` + `kill` otherwise. Returns True
    when a process was killed.
    """
    if shutil.which("fuser"):
        killed = await _run("fuser", "-k", f"{port}/tcp") == 0
    elif shutil.which("lsof"):
        process = await asyncio.create_subprocess_exec(
            "lsof", "-t", f"-i:{port}", "-sTCP:LISTEN",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await process.communicate()
        pids = stdout.decode().split()
        killed = bool(pids) and await _run("kill", *pids) == 0
    else:
        logger.warning(f"cannot free port {port}: neither fuser nor lsof is installed")
        return False

    if killed:
        logger.info(f"killed the process listening on port {port}")
        # the kernel needs a moment to release the socket
        await asyncio.sleep(0.1)
    return killed
