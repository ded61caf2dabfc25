"""Integration tests for the FlowForge WebSocket server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import sys
import unittest
from pathlib import Path
from typing import List, Tuple
from unittest import mock

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

import server as flowforge_server
from flowforge.dag import REGISTRY

TEST_PORT = 8799

SUM_FLOW = {
    "nodes": [
        {"id": "n1", "type": "number-input", "fields": {"value": "2"}},
        {"id": "n2", "type": "number-input", "fields": {"value": "3"}},
        {"id": "n3", "type": "math", "fields": {"op": "+"}},
        {"id": "n4", "type": "display"},
    ],
    "connections": [
        {"sourceNodeId": "n1", "sourcePort": "out", "targetNodeId": "n3", "targetPort": "a"},
        {"sourceNodeId": "n2", "sourcePort": "out", "targetNodeId": "n3", "targetPort": "b"},
        {"sourceNodeId": "n3", "sourcePort": "result", "targetNodeId": "n4", "targetPort": "data"},
    ],
}

HELD_FLOW = {
    "nodes": [
        {"id": "h", "type": "http-input", "fields": {"url": "http://example.invalid/"}},
        {"id": "d", "type": "display"},
    ],
    "connections": [
        {"sourceNodeId": "h", "sourcePort": "response", "targetNodeId": "d", "targetPort": "data"},
    ],
}


def decode(raw: str | bytes) -> dict:
    frame = json.loads(raw)
    if isinstance(frame.get("content"), str):
        frame["content"] = json.loads(frame["content"] or "{}")
    return frame


class FlowForgeServerTests(unittest.IsolatedAsyncioTestCase):
    @classmethod
    def tearDownClass(cls) -> None:
        print(
            "\nServer integration summary:\n"
            " • Node catalogue and node creation round-trip over the socket.\n"
            " • Unknown or out-of-order frames return protocol-safe errors.\n"
            " • Flow runs stream per-node status before the final report.\n"
            " • A running flow can be stopped and rejects a second run.\n"
        )

    async def asyncSetUp(self) -> None:
        self.stop_event = asyncio.Event()
        self.server_task = asyncio.create_task(
            flowforge_server.run_server(stop_event=self.stop_event, host="localhost", port=TEST_PORT)
        )
        await asyncio.sleep(0.1)  # Ensure the server is listening before tests run.

    async def asyncTearDown(self) -> None:
        self.stop_event.set()
        try:
            await asyncio.wait_for(self.server_task, timeout=1)
        except asyncio.TimeoutError:
            self.server_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.server_task

    def _connect(self):
        return connect(f"ws://localhost:{TEST_PORT}/", subprotocols=[flowforge_server.SUBPROTOCOL])

    async def _send(self, websocket, message_id: int, type_code: int, content: dict) -> None:
        payload = {
            "id": message_id,
            "requestId": 0,
            "type": type_code,
            "content": json.dumps(content),
        }
        await websocket.send(json.dumps(payload))

    async def _exchange(self, websocket, message_id: int, type_code: int, content: dict) -> Tuple[dict, int]:
        await self._send(websocket, message_id, type_code, content)
        response = decode(await websocket.recv())
        return response, response["id"] + 1

    async def _until_finished(self, websocket) -> List[dict]:
        frames = []
        finished = (flowforge_server.CODE_RUN_FINISHED_OK, flowforge_server.CODE_RUN_FINISHED_ERROR)
        while True:
            frame = decode(await asyncio.wait_for(websocket.recv(), timeout=5))
            frames.append(frame)
            if frame["type"] in finished:
                return frames

    def _hold_http_input(self) -> asyncio.Event:
        """Make http-input wait on the returned event instead of the network."""
        release = asyncio.Event()

        async def held(_inputs, _fields):
            await release.wait()
            return {"response": {"ok": True}}

        patcher = mock.patch.object(REGISTRY.lookup("http-input").capability, "fn", held)
        patcher.start()
        self.addCleanup(patcher.stop)
        return release

    async def test_node_types_request(self) -> None:
        async with self._connect() as websocket:
            response, next_id = await self._exchange(websocket, 1, 100, {})
            self.assertEqual(response["type"], flowforge_server.CODE_NODE_TYPES)
            self.assertEqual(response["requestId"], 1)
            self.assertEqual(next_id, 3)
            self.assertEqual(len(response["content"]["nodeTypes"]), 15)
            self.assertIn("map", response["content"]["categories"]["transform"])

    async def test_create_node_and_unknown_type(self) -> None:
        async with self._connect() as websocket:
            response, next_id = await self._exchange(websocket, 1, 101, {"typeId": "text-input", "x": 5, "y": 9})
            self.assertEqual(response["type"], flowforge_server.CODE_NODE_CREATED)
            self.assertEqual(response["content"]["node"]["fields"], {"value": "Hello World"})

            response, _ = await self._exchange(websocket, next_id, 101, {"typeId": "teleport"})
            self.assertEqual(response["type"], flowforge_server.CODE_NODE_CREATE_ERROR)
            self.assertIn("teleport", response["content"]["error"])

    async def test_unknown_message_type_returns_396(self) -> None:
        async with self._connect() as websocket:
            response, _ = await self._exchange(websocket, 1, 150, {})
            self.assertEqual(response["type"], flowforge_server.CODE_UNKNOWN_TYPE)
            self.assertEqual(response["requestId"], 1)

    async def test_out_of_order_message_id_returns_395(self) -> None:
        async with self._connect() as websocket:
            response, next_id = await self._exchange(websocket, 1, 100, {})
            response, recovered_next_id = await self._exchange(websocket, next_id + 1, 100, {})
            self.assertEqual(response["type"], flowforge_server.CODE_MESSAGE_ID_ERROR)
            self.assertEqual(response["content"]["expectedId"], next_id)
            self.assertEqual(recovered_next_id, response["id"] + 1)

            response, _ = await self._exchange(websocket, recovered_next_id, 100, {})
            self.assertEqual(response["type"], flowforge_server.CODE_NODE_TYPES)

    async def test_run_streams_status_then_report(self) -> None:
        async with self._connect() as websocket:
            response, _ = await self._exchange(websocket, 1, 102, SUM_FLOW)
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_STARTED)
            run_id = response["content"]["runId"]

            frames = await self._until_finished(websocket)
            statuses = [(f["content"]["nodeId"], f["content"]["status"]) for f in frames[:-1]]
            self.assertTrue(all(f["type"] == flowforge_server.CODE_NODE_STATUS for f in frames[:-1]))
            self.assertEqual(
                statuses,
                [
                    ("n1", "running"), ("n1", "success"),
                    ("n2", "running"), ("n2", "success"),
                    ("n3", "running"), ("n3", "success"),
                    ("n4", "running"), ("n4", "success"),
                ],
            )
            self.assertEqual([f["id"] for f in frames], list(range(3, 3 + len(frames))))

            final = frames[-1]
            self.assertEqual(final["type"], flowforge_server.CODE_RUN_FINISHED_OK)
            self.assertEqual(final["requestId"], 1)
            self.assertEqual(final["content"]["runId"], run_id)
            self.assertEqual(final["content"]["displays"], [{"nodeId": "n4", "data": 5.0}])

            response, _ = await self._exchange(websocket, final["id"] + 1, 104, {})
            self.assertEqual(response["type"], flowforge_server.CODE_RESULTS_CLEARED)

    async def test_failed_run_reports_error_code(self) -> None:
        flow = {"nodes": [{"id": "j", "type": "json-input", "fields": {"value": "{"}}], "connections": []}
        async with self._connect() as websocket:
            response, _ = await self._exchange(websocket, 1, 102, flow)
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_STARTED)
            frames = await self._until_finished(websocket)
            self.assertEqual(frames[-1]["type"], flowforge_server.CODE_RUN_FINISHED_ERROR)
            self.assertEqual(frames[-1]["content"]["status"], "error")

    async def test_run_rejects_malformed_flow_and_options(self) -> None:
        async with self._connect() as websocket:
            response, next_id = await self._exchange(websocket, 1, 102, {"nodes": [{"id": "a"}]})
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_ERROR)

            response, next_id = await self._exchange(websocket, next_id, 102, {**SUM_FLOW, "policy": "retry"})
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_ERROR)
            self.assertIn("retry", response["content"]["error"])

            response, next_id = await self._exchange(websocket, next_id, 102, {**SUM_FLOW, "concurrent": "false"})
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_ERROR)

            response, _ = await self._exchange(websocket, next_id, 102, {**SUM_FLOW, "maxConcurrency": 0})
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_ERROR)
            self.assertIn("maxConcurrency", response["content"]["error"])

    async def test_stop_cancels_running_flow(self) -> None:
        self._hold_http_input()
        async with self._connect() as websocket:
            response, _ = await self._exchange(websocket, 1, 102, HELD_FLOW)
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_STARTED)
            running = decode(await asyncio.wait_for(websocket.recv(), timeout=5))
            self.assertEqual((running["content"]["nodeId"], running["content"]["status"]), ("h", "running"))

            await self._send(websocket, running["id"] + 1, 103, {})
            frames = await self._until_finished(websocket)
            if flowforge_server.CODE_RUN_STOPPED not in [f["type"] for f in frames]:
                frames.append(decode(await asyncio.wait_for(websocket.recv(), timeout=5)))
            stopped = [f for f in frames if f["type"] == flowforge_server.CODE_RUN_STOPPED]
            self.assertEqual(len(stopped), 1)
            self.assertEqual(stopped[0]["requestId"], running["id"] + 1)

            final = [f for f in frames if f["type"] == flowforge_server.CODE_RUN_FINISHED_ERROR][0]
            self.assertEqual(final["content"]["status"], "cancelled")
            self.assertTrue(final["content"]["cancelled"])
            self.assertEqual(final["content"]["order"], ["h"])
            self.assertEqual(final["content"]["results"][0]["error"], "Run cancelled")
            self.assertEqual(final["content"]["displays"], [])

    async def test_second_run_while_running_is_rejected(self) -> None:
        release = self._hold_http_input()
        async with self._connect() as websocket:
            response, _ = await self._exchange(websocket, 1, 102, HELD_FLOW)
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_STARTED)
            running = decode(await asyncio.wait_for(websocket.recv(), timeout=5))

            response, _ = await self._exchange(websocket, running["id"] + 1, 102, SUM_FLOW)
            self.assertEqual(response["type"], flowforge_server.CODE_RUN_IN_PROGRESS)

            release.set()
            frames = await self._until_finished(websocket)
            self.assertEqual(frames[-1]["type"], flowforge_server.CODE_RUN_FINISHED_OK)
            self.assertEqual(frames[-1]["content"]["displays"], [{"nodeId": "d", "data": {"ok": True}}])

    async def test_stop_without_run_returns_error(self) -> None:
        async with self._connect() as websocket:
            response, _ = await self._exchange(websocket, 1, 103, {})
            self.assertEqual(response["type"], flowforge_server.CODE_STOP_RUN_ERROR)

    async def test_missing_subprotocol_is_refused(self) -> None:
        # Refused during the handshake or closed with 4406 right after it.
        with self.assertRaises((InvalidHandshake, ConnectionClosed)):
            async with connect(f"ws://localhost:{TEST_PORT}/") as websocket:
                await asyncio.wait_for(websocket.recv(), timeout=5)


if __name__ == "__main__":
    unittest.main()
