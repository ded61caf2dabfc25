"""WebSocket server implementing the FlowForge protocol."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future
from typing import Any, Callable, Dict
from uuid import uuid4

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from flowforge import (
    HOST,
    PORT,
    SUBPROTOCOL,
    FlowMessage,
    ProtocolError,
    RequestContext,
    build_status_response,
)
from flowforge.codes import (
    CODE_CLEAR_RESULTS_ERROR,
    CODE_MESSAGE_ID_ERROR,
    CODE_NODE_CREATE_ERROR,
    CODE_NODE_CREATED,
    CODE_NODE_STATUS,
    CODE_NODE_TYPES,
    CODE_RESULTS_CLEARED,
    CODE_RUN_ERROR,
    CODE_RUN_FINISHED_ERROR,
    CODE_RUN_FINISHED_OK,
    CODE_RUN_IN_PROGRESS,
    CODE_RUN_STARTED,
    CODE_RUN_STOPPED,
    CODE_STOP_RUN_ERROR,
    CODE_UNKNOWN_TYPE,
)
from flowforge.config import LOG_FORMAT
from flowforge.services import route_message

LOGGER = logging.getLogger("flowforge")

__all__ = [
    "HOST",
    "PORT",
    "SUBPROTOCOL",
    "CODE_CLEAR_RESULTS_ERROR",
    "CODE_MESSAGE_ID_ERROR",
    "CODE_NODE_CREATE_ERROR",
    "CODE_NODE_CREATED",
    "CODE_NODE_STATUS",
    "CODE_NODE_TYPES",
    "CODE_RESULTS_CLEARED",
    "CODE_RUN_ERROR",
    "CODE_RUN_FINISHED_ERROR",
    "CODE_RUN_FINISHED_OK",
    "CODE_RUN_IN_PROGRESS",
    "CODE_RUN_STARTED",
    "CODE_RUN_STOPPED",
    "CODE_STOP_RUN_ERROR",
    "CODE_UNKNOWN_TYPE",
    "run_server",
    "main",
]


def _log_with_context(level: int, context: RequestContext | None, message: str, *args: Any) -> None:
    if context and context.log_label:
        LOGGER.log(level, "%s " + message, context.log_label, *args)
    else:
        LOGGER.log(level, message, *args)


class MessageDispatcher:
    """Serialize outgoing frames and keep protocol ids in sync."""

    def __init__(self, websocket: ServerConnection) -> None:
        self._websocket = websocket
        self.last_message_id = 0
        self._lock = asyncio.Lock()

    async def send(self, *, type_code: int, request_id: int, content: Dict[str, Any]) -> FlowMessage:
        async with self._lock:
            message_id = self.last_message_id + 1
            response = build_status_response(
                message_id=message_id,
                request_id=request_id,
                type_code=type_code,
                content=content,
            )
            await self._websocket.send(response.to_json())
            self.last_message_id = message_id
            return response


def _monitor_async_result(fut: asyncio.Future[Any] | Future, label: str) -> None:
    def _done(result_future: asyncio.Future[Any] | Future) -> None:
        if result_future.cancelled():
            return
        exc = result_future.exception()
        if exc is not None:
            LOGGER.error("%s failed: %s", label, exc)

    fut.add_done_callback(_done)


def _create_status_callback(
    dispatcher: MessageDispatcher,
    loop: asyncio.AbstractEventLoop,
) -> Callable[[int, Dict[str, Any], int], None]:
    def _callback(type_code: int, payload: Dict[str, Any], request_id: int) -> None:
        async def _send() -> None:
            await dispatcher.send(type_code=type_code, request_id=request_id, content=payload)

        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is loop:
            task = loop.create_task(_send())
            _monitor_async_result(task, "status-update")
        else:
            future = asyncio.run_coroutine_threadsafe(_send(), loop)
            _monitor_async_result(future, "status-update")

    return _callback


async def flowforge_handler(websocket: ServerConnection) -> None:
    """Handle each WebSocket client adhering to the FlowForge protocol."""
    if websocket.subprotocol != SUBPROTOCOL:
        LOGGER.warning("Rejected client without FlowForge subprotocol")
        await websocket.close(code=4406, reason=f"Subprotocol '{SUBPROTOCOL}' required")
        return

    remote = websocket.remote_address
    remote_ip = str(remote[0]) if isinstance(remote, tuple) and remote else None
    context = RequestContext(connection_id=uuid4().hex[:12], client_ip=remote_ip)
    context.log_label = f"[conn={context.connection_id}]"
    _log_with_context(logging.INFO, context, "Client connected from %s", remote)

    dispatcher = MessageDispatcher(websocket)
    loop = asyncio.get_running_loop()
    context.status_callback = _create_status_callback(dispatcher, loop)

    try:
        while True:
            try:
                raw_message = await websocket.recv()
            except ConnectionClosed:
                _log_with_context(logging.INFO, context, "Client disconnected")
                break

            try:
                message = FlowMessage.parse(raw_message, error_code=CODE_UNKNOWN_TYPE)
            except ProtocolError as exc:
                LOGGER.error("Protocol violation: %s", exc)
                await dispatcher.send(
                    type_code=exc.error_code,
                    request_id=0,
                    content={"error": str(exc)},
                )
                continue

            expected_id = dispatcher.last_message_id + 1
            if message.message_id != expected_id:
                LOGGER.warning(
                    "Incorrect message id. Expected %s, got %s",
                    expected_id,
                    message.message_id,
                )
                await dispatcher.send(
                    type_code=CODE_MESSAGE_ID_ERROR,
                    request_id=message.message_id,
                    content={
                        "error": "incorrect message id",
                        "expectedId": expected_id,
                        "receivedId": message.message_id,
                    },
                )
                continue
            # The client's id occupies a slot in the shared sequence.
            dispatcher.last_message_id = message.message_id

            post_send = None
            try:
                response_type, response_content, post_send = route_message(message, context)
            except ProtocolError as exc:
                response_type = exc.error_code
                response_content = {"error": str(exc)}

            await dispatcher.send(
                type_code=response_type,
                request_id=message.message_id,
                content=response_content,
            )

            if post_send is not None:
                context.run_task = asyncio.create_task(post_send)
                _monitor_async_result(context.run_task, f"run-{context.connection_id}")
    finally:
        context.status_callback = None
        if context.cancel_token is not None:
            context.cancel_token.cancel()
        if context.run_task is not None and not context.run_task.done():
            context.run_task.cancel()
        _log_with_context(logging.INFO, context, "Connection closed and cleaned up")


async def run_server(
    stop_event: asyncio.Event | None = None,
    *,
    host: str = HOST,
    port: int = PORT,
) -> None:
    """Start the FlowForge WebSocket server until cancelled or stop_event set."""
    LOGGER.info("Starting FlowForge WebSocket server on %s:%s", host, port)
    async with serve(
        flowforge_handler,
        host,
        port,
        subprotocols=[SUBPROTOCOL],
    ):
        if stop_event is None:
            await asyncio.Future()  # Run indefinitely.
        else:
            await stop_event.wait()


async def main() -> None:
    """Entry point used by the CLI runner."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    await run_server()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        LOGGER.info("Server shutdown requested via keyboard interrupt.")
