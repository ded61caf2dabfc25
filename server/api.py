"""FastAPI surface for browsing node types and running flows over HTTP."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from flowforge.config import API_PORT, HOST
from flowforge.dag import REGISTRY, FlowEngine, PayloadError
from flowforge.flow_runner import parse_flow_payload, summarize_report

app = FastAPI(title="FlowForge Engine API", version="0.1.0")


class PortModel(BaseModel):
    name: str
    type: str


class FieldModel(BaseModel):
    name: str
    type: str
    default: str
    placeholder: Optional[str] = None
    options: List[str] = Field(default_factory=list)


class NodeTypeModel(BaseModel):
    id: str
    icon: str
    title: str
    category: str
    color: str
    inputs: List[PortModel]
    outputs: List[PortModel]
    fields: List[FieldModel]


class CreateNodeRequest(BaseModel):
    typeId: str
    x: float = 0.0
    y: float = 0.0


class NodeModel(BaseModel):
    id: str
    type: str
    x: float = 0.0
    y: float = 0.0
    fields: Dict[str, str] = Field(default_factory=dict)


class ConnectionModel(BaseModel):
    id: Optional[str] = None
    sourceNodeId: str
    sourcePort: str
    targetNodeId: str
    targetPort: str


class RunRequest(BaseModel):
    nodes: List[NodeModel] = Field(default_factory=list)
    connections: List[ConnectionModel] = Field(default_factory=list)
    policy: Optional[Literal["halt-on-any-error", "skip-dependents-only"]] = None
    concurrent: Optional[bool] = None
    maxConcurrency: Optional[int] = Field(default=None, ge=1)
    timeoutSeconds: Optional[float] = Field(default=None, gt=0)


class ResultModel(BaseModel):
    nodeId: str
    status: str
    durationMs: Optional[float] = None
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class DisplayModel(BaseModel):
    nodeId: str
    data: Any = None


class RunReportModel(BaseModel):
    status: str
    error: Optional[str] = None
    cancelled: bool = False
    order: List[str]
    results: List[ResultModel]
    displays: List[DisplayModel]


@app.get("/node-types", response_model=List[NodeTypeModel])
def list_node_types() -> List[Dict[str, Any]]:
    return [descriptor.describe() for descriptor in REGISTRY.types()]


@app.get("/node-types/categories", response_model=Dict[str, List[NodeTypeModel]])
def list_node_types_by_category() -> Dict[str, List[Dict[str, Any]]]:
    return {
        category: [descriptor.describe() for descriptor in descriptors]
        for category, descriptors in REGISTRY.by_category().items()
    }


@app.get("/node-types/{type_id}", response_model=NodeTypeModel)
def get_node_type(type_id: str) -> Dict[str, Any]:
    descriptor = REGISTRY.lookup(type_id)
    if descriptor is None:
        raise HTTPException(status_code=404, detail=f"Node type '{type_id}' was not found.")
    return descriptor.describe()


@app.post("/nodes", response_model=NodeModel, status_code=201)
def create_node(request: CreateNodeRequest) -> Dict[str, Any]:
    node = REGISTRY.create_node(request.typeId, request.x, request.y)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Node type '{request.typeId}' was not found.")
    return {"id": node.id, "type": node.type, "x": node.x, "y": node.y, "fields": node.fields}


@app.post("/runs", response_model=RunReportModel)
async def run_flow(request: RunRequest) -> Dict[str, Any]:
    """Run a flow on a fresh engine; concurrent requests never share state."""
    try:
        flow = parse_flow_payload(request.model_dump(exclude_none=True))
    except PayloadError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    engine = FlowEngine.from_settings(
        error_policy=request.policy,
        concurrent=request.concurrent,
        max_concurrency=request.maxConcurrency,
        node_timeout=request.timeoutSeconds,
    )
    report = await engine.run(flow)
    return summarize_report(report)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=HOST, port=API_PORT)
