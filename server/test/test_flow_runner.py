"""Tests for payload parsing, report summaries and the protocol frame codec."""

from __future__ import annotations

import json
import sys
import unittest
from pathlib import Path

import numpy as np

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from flowforge import FlowEngine, FlowMessage, ProtocolError, build_status_response
from flowforge.dag import PayloadError
from flowforge.flow_runner import (
    describe_value,
    parse_flow_payload,
    run_flow_payload,
    summarize_report,
    to_jsonable,
)

SUM_FLOW = {
    "nodes": [
        {"id": "n1", "type": "number-input", "x": 10, "y": 20, "fields": {"value": "2"}},
        {"id": "n2", "type": "number-input", "fields": {"value": 3}},
        {"id": "n3", "type": "math", "fields": {"op": "+"}},
        {"id": "n4", "type": "display"},
    ],
    "connections": [
        {"sourceNodeId": "n1", "sourcePort": "out", "targetNodeId": "n3", "targetPort": "a"},
        {"sourceNodeId": "n2", "sourcePort": "out", "targetNodeId": "n3", "targetPort": "b"},
        {"sourceNodeId": "n3", "sourcePort": "result", "targetNodeId": "n4", "targetPort": "data"},
    ],
}


class ParseFlowPayloadTests(unittest.TestCase):
    def test_top_level_payload(self) -> None:
        flow = parse_flow_payload(SUM_FLOW)
        self.assertEqual([n.id for n in flow.nodes], ["n1", "n2", "n3", "n4"])
        self.assertEqual((flow.nodes[0].x, flow.nodes[0].y), (10.0, 20.0))
        self.assertEqual(flow.nodes[1].fields, {"value": "3"})
        self.assertEqual(flow.connections[0].id, "conn-0")
        self.assertEqual(flow.connections[2].target_port, "data")

    def test_nested_editor_payload(self) -> None:
        payload = {
            "flow": {
                "id": "flow-1",
                "name": "Sum",
                "createdAt": "2024-01-01T00:00:00Z",
                "nodes": [
                    {"id": "a", "data": {"type": "text-input", "fields": {"value": "hi"}}, "position": {"x": 5, "y": 6}},
                    {"id": "b", "kind": "display"},
                ],
                "edges": [{"id": "e1", "source": "a", "sourceHandle": "out", "target": "b", "targetHandle": "data"}],
            }
        }
        flow = parse_flow_payload(payload)
        self.assertEqual((flow.id, flow.name, flow.created_at), ("flow-1", "Sum", "2024-01-01T00:00:00Z"))
        self.assertEqual(flow.nodes[0].type, "text-input")
        self.assertEqual(flow.nodes[0].fields, {"value": "hi"})
        self.assertEqual((flow.nodes[0].x, flow.nodes[0].y), (5.0, 6.0))
        self.assertEqual(flow.nodes[1].type, "display")
        self.assertEqual(flow.connections[0].id, "e1")
        self.assertEqual(flow.connections[0].source_port, "out")

    def test_empty_payload_is_an_empty_flow(self) -> None:
        flow = parse_flow_payload({})
        self.assertEqual((flow.nodes, flow.connections), ([], []))

    def test_malformed_payloads_are_rejected(self) -> None:
        bad_payloads = [
            [],
            {"flow": "nope"},
            {"nodes": {"id": "a"}},
            {"nodes": [{"type": "display"}]},
            {"nodes": [{"id": "a"}]},
            {"nodes": [{"id": "a", "type": "display", "x": "left"}]},
            {"nodes": [{"id": "a", "type": "display", "fields": ["x"]}]},
            {"nodes": [], "connections": [{"sourceNodeId": "a", "targetNodeId": "b"}]},
            {"nodes": [], "connections": [{"sourcePort": "out", "targetPort": "in"}]},
        ]
        for payload in bad_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(PayloadError):
                    parse_flow_payload(payload)  # type: ignore[arg-type]


class RunFlowPayloadTests(unittest.IsolatedAsyncioTestCase):
    async def test_sum_flow_end_to_end(self) -> None:
        report, summary = await run_flow_payload(FlowEngine(), SUM_FLOW)

        self.assertTrue(report.succeeded)
        self.assertEqual(summary["status"], "success")
        self.assertEqual(summary["order"], ["n1", "n2", "n3", "n4"])
        self.assertEqual(summary["displays"], [{"nodeId": "n4", "data": 5.0}])
        math_entry = summary["results"][2]
        self.assertEqual(math_entry["nodeId"], "n3")
        self.assertEqual(math_entry["outputs"], {"result": 5.0})
        self.assertIsInstance(math_entry["durationMs"], float)
        json.dumps(summary)

    async def test_cycle_summary_reports_error(self) -> None:
        payload = {
            "nodes": [{"id": "a", "type": "merge"}, {"id": "b", "type": "merge"}],
            "connections": [
                {"sourceNodeId": "a", "sourcePort": "result", "targetNodeId": "b", "targetPort": "a"},
                {"sourceNodeId": "b", "sourcePort": "result", "targetNodeId": "a", "targetPort": "a"},
            ],
        }
        _, summary = await run_flow_payload(FlowEngine(), payload)
        self.assertEqual(summary["status"], "error")
        self.assertEqual(summary["results"], [])
        self.assertIn("Cycle detected", summary["error"])

    async def test_failed_node_summary_carries_error(self) -> None:
        payload = {"nodes": [{"id": "j", "type": "json-input", "fields": {"value": "{oops"}}]}
        _, summary = await run_flow_payload(FlowEngine(), payload)
        self.assertEqual(summary["status"], "error")
        self.assertIsNone(summary["error"])
        self.assertTrue(summary["results"][0]["error"].startswith("Invalid JSON"))
        self.assertNotIn("outputs", summary["results"][0])


class JsonableTests(unittest.TestCase):
    def test_numpy_and_non_finite_values(self) -> None:
        value = {"arr": np.arange(3), "scalar": np.float64(1.5), "nan": float("nan"), 1: (1, 2)}
        self.assertEqual(to_jsonable(value), {"arr": [0, 1, 2], "scalar": 1.5, "nan": None, "1": [1, 2]})

    def test_unknown_objects_are_described(self) -> None:
        out = to_jsonable(object())
        self.assertEqual(out["type"], "object")
        self.assertIn("repr", out)
        self.assertEqual(to_jsonable(b"abc"), {"type": "bytes", "length": 3})

    def test_describe_value_of_arrays(self) -> None:
        described = describe_value(np.array([[1.0, 3.0]]))
        self.assertEqual(described["shape"], [1, 2])
        self.assertEqual((described["min"], described["max"], described["mean"]), (1.0, 3.0, 2.0))

    def test_summarize_empty_report(self) -> None:
        summary = summarize_report(FlowEngine().last_report)
        self.assertEqual(summary["status"], "success")
        self.assertEqual(summary["results"], [])


class FlowMessageTests(unittest.TestCase):
    def test_parse_valid_frame(self) -> None:
        raw = json.dumps({"id": 1, "requestId": 0, "type": 100, "content": json.dumps({"a": 1})})
        message = FlowMessage.parse(raw, error_code=396)
        self.assertEqual((message.message_id, message.type_code, message.content), (1, 100, {"a": 1}))

    def test_empty_content_string_is_empty_object(self) -> None:
        raw = json.dumps({"id": 1, "requestId": 0, "type": 100, "content": ""})
        self.assertEqual(FlowMessage.parse(raw, error_code=396).content, {})

    def test_invalid_frames_raise_protocol_error(self) -> None:
        frames = [
            "not json",
            json.dumps({"id": 1, "type": 100, "content": "{}"}),
            json.dumps({"id": "x", "requestId": 0, "type": 100, "content": "{}"}),
            json.dumps({"id": 1, "requestId": 0, "type": 100, "content": {"a": 1}}),
            json.dumps({"id": 1, "requestId": 0, "type": 100, "content": "[1, 2]"}),
            json.dumps({"id": 1, "requestId": 0, "type": 100, "content": "{bad"}),
        ]
        for raw in frames:
            with self.subTest(raw=raw):
                with self.assertRaises(ProtocolError) as ctx:
                    FlowMessage.parse(raw, error_code=396)
                self.assertEqual(ctx.exception.error_code, 396)

    def test_to_json_encodes_content_as_string(self) -> None:
        response = build_status_response(message_id=2, request_id=1, type_code=200, content={"v": np.int64(4)})
        decoded = json.loads(response.to_json())
        self.assertEqual((decoded["id"], decoded["requestId"]), (2, 1))
        self.assertEqual(json.loads(decoded["content"]), {"v": 4})


if __name__ == "__main__":
    unittest.main()
