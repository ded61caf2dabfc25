"""Node type descriptors and the registry that resolves them by id."""

from __future__ import annotations

import inspect
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Literal, Optional, Tuple, Union
from uuid import uuid4

from .errors import RegistryError
from .model import FieldValues, Node, PortValues

PortType = Literal["any", "array", "number", "string", "boolean", "object"]
FieldType = Literal["text", "textarea", "number", "select"]
Category = Literal["input", "transform", "logic", "output"]

CATEGORIES: Tuple[str, ...] = ("input", "transform", "logic", "output")
CATEGORY_COLORS: Dict[str, str] = {
    "input": "#3fb950",
    "transform": "#58a6ff",
    "logic": "#d29922",
    "output": "#f85149",
}
DEFAULT_COLOR = "#8b949e"

CapabilityFn = Callable[[PortValues, FieldValues], Union[PortValues, Awaitable[PortValues]]]


class NodeCapability(ABC):
    """Execution logic behind a node type.

    Implementations may be synchronous or return an awaitable. Failures are
    reported by raising; the message becomes the node's error.
    """

    @abstractmethod
    def execute(self, inputs: PortValues, fields: FieldValues) -> Union[PortValues, Awaitable[PortValues]]:
        """Compute the output ports from the gathered inputs and node fields."""

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.execute)


class FunctionCapability(NodeCapability):
    """Adapts a plain function or coroutine function to :class:`NodeCapability`."""

    def __init__(self, fn: CapabilityFn) -> None:
        self.fn = fn

    def execute(self, inputs: PortValues, fields: FieldValues) -> Union[PortValues, Awaitable[PortValues]]:
        return self.fn(inputs, fields)

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.fn)

    def __repr__(self) -> str:
        return f"FunctionCapability({getattr(self.fn, '__name__', self.fn)!r})"


@dataclass(frozen=True)
class PortSpec:
    name: str
    type: PortType = "any"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType = "text"
    default: str = ""
    placeholder: Optional[str] = None
    options: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NodeTypeDescriptor:
    """Declarative node type: palette metadata, port/field schema, capability.

    Port types are advisory metadata for the editor; the engine never checks
    values against them.
    """
    type_id: str
    title: str
    category: Category
    capability: NodeCapability
    icon: str = ""
    inputs: Tuple[PortSpec, ...] = ()
    outputs: Tuple[PortSpec, ...] = ()
    fields: Tuple[FieldSpec, ...] = ()

    def default_fields(self) -> FieldValues:
        return {spec.name: spec.default for spec in self.fields}

    def palette_entry(self) -> Dict[str, str]:
        return {
            "id": self.type_id,
            "icon": self.icon,
            "title": self.title,
            "category": self.category,
            "color": CATEGORY_COLORS.get(self.category, DEFAULT_COLOR),
        }

    def describe(self) -> Dict[str, Any]:
        """JSON-friendly schema (everything except the capability itself)."""
        return {
            **self.palette_entry(),
            "inputs": [{"name": p.name, "type": p.type} for p in self.inputs],
            "outputs": [{"name": p.name, "type": p.type} for p in self.outputs],
            "fields": [
                {
                    "name": f.name,
                    "type": f.type,
                    "default": f.default,
                    "placeholder": f.placeholder,
                    "options": list(f.options),
                }
                for f in self.fields
            ],
        }


def node_type(
    type_id: str,
    title: str,
    category: Category,
    fn: CapabilityFn,
    *,
    icon: str = "",
    inputs: Tuple[Tuple[str, PortType], ...] = (),
    outputs: Tuple[Tuple[str, PortType], ...] = (),
    fields: Tuple[FieldSpec, ...] = (),
) -> NodeTypeDescriptor:
    """Shorthand for building a descriptor around a plain function."""
    return NodeTypeDescriptor(
        type_id=type_id,
        title=title,
        category=category,
        capability=FunctionCapability(fn),
        icon=icon,
        inputs=tuple(PortSpec(name, kind) for name, kind in inputs),
        outputs=tuple(PortSpec(name, kind) for name, kind in outputs),
        fields=tuple(fields),
    )


class NodeTypeRegistry:
    """Mapping from type id to descriptor, populated once and then frozen."""

    def __init__(self, descriptors: Optional[List[NodeTypeDescriptor]] = None, *, frozen: bool = False) -> None:
        self._types: Dict[str, NodeTypeDescriptor] = {}
        self._frozen = False
        for descriptor in descriptors or []:
            self.register(descriptor)
        if frozen:
            self.freeze()

    def register(self, descriptor: NodeTypeDescriptor) -> NodeTypeDescriptor:
        if self._frozen:
            raise RegistryError(
                f"Cannot register '{descriptor.type_id}': registry is frozen"
            )
        if descriptor.type_id in self._types:
            raise RegistryError(f"Node type '{descriptor.type_id}' is already registered")
        self._types[descriptor.type_id] = descriptor
        return descriptor

    def freeze(self) -> "NodeTypeRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, type_id: str) -> Optional[NodeTypeDescriptor]:
        return self._types.get(type_id)

    def __contains__(self, type_id: object) -> bool:
        return type_id in self._types

    def __iter__(self) -> Iterator[NodeTypeDescriptor]:
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)

    def types(self) -> List[NodeTypeDescriptor]:
        return list(self._types.values())

    def by_category(self) -> Dict[str, List[NodeTypeDescriptor]]:
        grouped: Dict[str, List[NodeTypeDescriptor]] = {category: [] for category in CATEGORIES}
        for descriptor in self._types.values():
            grouped.setdefault(descriptor.category, []).append(descriptor)
        return grouped

    def palette(self) -> List[Dict[str, str]]:
        return [descriptor.palette_entry() for descriptor in self._types.values()]

    def create_node(self, type_id: str, x: float, y: float) -> Optional[Node]:
        """Allocate a node of ``type_id`` with fields seeded from the defaults."""
        descriptor = self.lookup(type_id)
        if descriptor is None:
            return None
        return Node(
            id=f"node-{int(time.time() * 1000)}-{uuid4().hex[:5]}",
            type=type_id,
            x=x,
            y=y,
            fields=descriptor.default_fields(),
        )
