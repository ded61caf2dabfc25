"""Built-in node types and the default registry populated from them."""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, List, Optional, Tuple

import httpx
import numpy as np

from .. import config
from .errors import CapabilityError
from .expressions import ExpressionError, compile_expression
from .model import DISPLAY_PORT, FieldValues, PortValues
from .registry import FieldSpec, NodeTypeRegistry, node_type

LOGGER = logging.getLogger("flowforge")

_LEADING_NUMBER = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_PATH_SPLIT = re.compile(r"\.|\[|\]")


# ================================
# Value helpers
# ================================
def to_number(value: Any) -> float:
    """Read the leading number of ``value``'s text form; 0 when there is none."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, np.number)):
        number = float(value)
        return 0.0 if math.isnan(number) else number
    match = _LEADING_NUMBER.match(stringify(value))
    if not match:
        return 0.0
    return float(match.group(0))


def stringify(value: Any) -> str:
    """Text form used when comparing values against text fields."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _truthy(value: Any) -> bool:
    """Editor truth test: empty containers are true, empty text and NaN are false."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, np.number)):
        number = float(value)
        return number != 0 and not math.isnan(number)
    if isinstance(value, str):
        return value != ""
    return True


def _loose_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, np.number)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return None


def _loose_pair(a: Any, b: Any) -> Tuple[Any, Any]:
    """Coerce both sides to numbers when a number or boolean meets a scalar."""
    if a is None or b is None or (isinstance(a, str) and isinstance(b, str)):
        return a, b
    left, right = _loose_number(a), _loose_number(b)
    if left is None or right is None:
        return a, b
    return left, right


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _safe_filename(value: Any, fallback: str) -> str:
    raw = str(value or "")
    if not raw:
        raw = fallback
    cleaned = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in raw)
    cleaned = cleaned.strip("._")
    return cleaned or fallback


# ================================
# Input nodes
# ================================
def _fn_json_input(_inputs: PortValues, fields: FieldValues) -> PortValues:
    try:
        return {"out": json.loads(fields.get("value") or "null")}
    except json.JSONDecodeError as exc:
        raise CapabilityError(f"Invalid JSON: {exc}") from None


def _fn_text_input(_inputs: PortValues, fields: FieldValues) -> PortValues:
    return {"out": fields.get("value", "")}


def _fn_number_input(_inputs: PortValues, fields: FieldValues) -> PortValues:
    return {"out": to_number(fields.get("value", "0"))}


async def _fn_http_input(_inputs: PortValues, fields: FieldValues) -> PortValues:
    url = (fields.get("url") or "").strip()
    if not url:
        raise CapabilityError("HTTP Request node requires a url")
    method = (fields.get("method") or "GET").upper()
    async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT) as client:
        try:
            response = await client.request(method, url)
        except httpx.HTTPError as exc:
            raise CapabilityError(f"{method} {url} failed: {exc}") from exc
    try:
        return {"response": response.json()}
    except ValueError:
        raise CapabilityError(
            f"{method} {url} returned non-JSON content (status {response.status_code})"
        ) from None


# ================================
# Transform nodes
# ================================
def _fn_map(inputs: PortValues, fields: FieldValues) -> PortValues:
    items = _as_list(inputs.get("array"))
    try:
        expression = compile_expression(fields.get("expression") or "item")
    except ExpressionError as exc:
        LOGGER.warning("map left items unchanged: %s", exc)
        return {"result": items}
    result = []
    for index, item in enumerate(items):
        try:
            result.append(expression.evaluate({"item": item, "index": index}))
        except ExpressionError as exc:
            LOGGER.debug("map kept item %d unchanged: %s", index, exc)
            result.append(item)
    return {"result": result}


def _fn_filter(inputs: PortValues, fields: FieldValues) -> PortValues:
    items = _as_list(inputs.get("array"))
    try:
        condition = compile_expression(fields.get("condition") or "True")
    except ExpressionError as exc:
        LOGGER.warning("filter kept every item: %s", exc)
        return {"result": items}
    result = []
    for index, item in enumerate(items):
        try:
            keep = _truthy(condition.evaluate({"item": item, "index": index}))
        except ExpressionError as exc:
            LOGGER.debug("filter kept item %d: %s", index, exc)
            keep = True
        if keep:
            result.append(item)
    return {"result": result}


def _fn_jsonpath(inputs: PortValues, fields: FieldValues) -> PortValues:
    result = inputs.get("json")
    for part in (p for p in _PATH_SPLIT.split((fields.get("path") or "").strip()) if p):
        if result is None:
            break
        if isinstance(result, dict):
            result = result.get(part)
        elif isinstance(result, list) and part.lstrip("-").isdigit():
            index = int(part)
            result = result[index] if 0 <= index < len(result) else None
        else:
            result = None
    return {"result": result}


def _fn_merge(inputs: PortValues, _fields: FieldValues) -> PortValues:
    a, b = inputs.get("a"), inputs.get("b")
    if isinstance(a, list) and isinstance(b, list):
        return {"result": [*a, *b]}
    if isinstance(a, dict) and isinstance(b, dict):
        return {"result": {**a, **b}}
    return {"result": [a, b]}


# ================================
# Logic nodes
# ================================
def _fn_if_else(inputs: PortValues, _fields: FieldValues) -> PortValues:
    port = "true" if _truthy(inputs.get("condition")) else "false"
    return {port: inputs.get("value")}


def _fn_switch(inputs: PortValues, fields: FieldValues) -> PortValues:
    value = inputs.get("value")
    text = stringify(value)
    for case in ("case1", "case2"):
        if text == fields.get(case):
            return {case: value}
    return {"default": value}


MATH_OPS = ("+", "-", "*", "/", "%", "^")


def _fn_math(inputs: PortValues, fields: FieldValues) -> PortValues:
    a = np.float64(to_number(inputs.get("a")))
    b = np.float64(to_number(inputs.get("b")))
    op = fields.get("op", "+")
    with np.errstate(all="ignore"):
        if op == "-":
            result = a - b
        elif op == "*":
            result = a * b
        elif op == "/":
            result = a / b if b != 0 else np.float64(0)
        elif op == "%":
            result = np.fmod(a, b)
        elif op == "^":
            result = np.power(a, b)
        else:
            result = a + b
    return {"result": float(result)}


COMPARE_OPS = ("==", "!=", ">", "<", ">=", "<=")


def _fn_compare(inputs: PortValues, fields: FieldValues) -> PortValues:
    a, b = _loose_pair(inputs.get("a"), inputs.get("b"))
    op = fields.get("op", "==")
    try:
        if op == "!=":
            result = a != b
        elif op == ">":
            result = a > b
        elif op == "<":
            result = a < b
        elif op == ">=":
            result = a >= b
        elif op == "<=":
            result = a <= b
        else:
            result = a == b
    except TypeError:
        result = False
    return {"result": bool(result)}


# ================================
# Output nodes
# ================================
def _fn_display(inputs: PortValues, _fields: FieldValues) -> PortValues:
    LOGGER.info("Display: %r", inputs.get("data"))
    return {DISPLAY_PORT: inputs.get("data")}


def _fn_console(inputs: PortValues, fields: FieldValues) -> PortValues:
    LOGGER.info("[%s] %r", fields.get("label") or "Output", inputs.get("data"))
    return {DISPLAY_PORT: inputs.get("data")}


def _fn_download(inputs: PortValues, fields: FieldValues) -> PortValues:
    data = inputs.get("data")
    filename = fields.get("filename") or "output.json"
    content = data if isinstance(data, str) else json.dumps(data, indent=2, default=str)
    target_dir = config.OUTPUTS_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / _safe_filename(filename, "output.json")
    path.write_text(content, encoding="utf-8")
    LOGGER.info("Download written to %s", path)
    return {DISPLAY_PORT: f"Downloaded: {filename}"}


# ================================
# Registry of built-in node types
# ================================
BUILTIN_NODE_TYPES = [
    node_type(
        "json-input", "JSON Input", "input", _fn_json_input,
        icon="📥",
        outputs=(("out", "any"),),
        fields=(
            FieldSpec(
                "value",
                "textarea",
                '[\n  { "name": "Alice", "age": 25 },\n  { "name": "Bob", "age": 30 }\n]',
            ),
        ),
    ),
    node_type(
        "text-input", "Text Input", "input", _fn_text_input,
        icon="📝",
        outputs=(("out", "string"),),
        fields=(FieldSpec("value", "text", "Hello World"),),
    ),
    node_type(
        "number-input", "Number", "input", _fn_number_input,
        icon="🔢",
        outputs=(("out", "number"),),
        fields=(FieldSpec("value", "number", "42"),),
    ),
    node_type(
        "http-input", "HTTP Request", "input", _fn_http_input,
        icon="🌐",
        outputs=(("response", "any"),),
        fields=(
            FieldSpec("url", "text", "https://jsonplaceholder.typicode.com/users/1"),
            FieldSpec("method", "select", "GET", options=("GET", "POST")),
        ),
    ),
    node_type(
        "map", "Map", "transform", _fn_map,
        icon="🔄",
        inputs=(("array", "array"),),
        outputs=(("result", "array"),),
        fields=(FieldSpec("expression", "text", "item", placeholder="e.g. item.name or item * 2"),),
    ),
    node_type(
        "filter", "Filter", "transform", _fn_filter,
        icon="🔍",
        inputs=(("array", "array"),),
        outputs=(("result", "array"),),
        fields=(FieldSpec("condition", "text", "item.age > 18", placeholder="e.g. item > 5 or item.active"),),
    ),
    node_type(
        "jsonpath", "JSONPath", "transform", _fn_jsonpath,
        icon="📍",
        inputs=(("json", "any"),),
        outputs=(("result", "any"),),
        fields=(FieldSpec("path", "text", "items", placeholder="data.items[0]"),),
    ),
    node_type(
        "merge", "Merge", "transform", _fn_merge,
        icon="🔀",
        inputs=(("a", "any"), ("b", "any")),
        outputs=(("result", "any"),),
    ),
    node_type(
        "if-else", "If/Else", "logic", _fn_if_else,
        icon="❓",
        inputs=(("condition", "boolean"), ("value", "any")),
        outputs=(("true", "any"), ("false", "any")),
    ),
    node_type(
        "switch", "Switch", "logic", _fn_switch,
        icon="🔀",
        inputs=(("value", "any"),),
        outputs=(("case1", "any"), ("case2", "any"), ("default", "any")),
        fields=(FieldSpec("case1", "text", "a"), FieldSpec("case2", "text", "b")),
    ),
    node_type(
        "math", "Math", "logic", _fn_math,
        icon="➕",
        inputs=(("a", "number"), ("b", "number")),
        outputs=(("result", "number"),),
        fields=(FieldSpec("op", "select", "+", options=MATH_OPS),),
    ),
    node_type(
        "compare", "Compare", "logic", _fn_compare,
        icon="⚖️",
        inputs=(("a", "any"), ("b", "any")),
        outputs=(("result", "boolean"),),
        fields=(FieldSpec("op", "select", "==", options=COMPARE_OPS),),
    ),
    node_type(
        "display", "Display", "output", _fn_display,
        icon="📤",
        inputs=(("data", "any"),),
    ),
    node_type(
        "console", "Console Log", "output", _fn_console,
        icon="🖥️",
        inputs=(("data", "any"),),
        fields=(FieldSpec("label", "text", "Output"),),
    ),
    node_type(
        "download", "Download", "output", _fn_download,
        icon="💾",
        inputs=(("data", "any"),),
        fields=(FieldSpec("filename", "text", "output.json"),),
    ),
]


def build_default_registry() -> NodeTypeRegistry:
    return NodeTypeRegistry(BUILTIN_NODE_TYPES, frozen=True)


REGISTRY: NodeTypeRegistry = build_default_registry()
