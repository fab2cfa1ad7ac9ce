"""Read-only API over polled nodes and their history streams."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from ..core.models import HealthResponse, Node, NodeStatus, NodeSummary
from ..services.polling_service import node_polling_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_node_or_404(node_id: str) -> Node:
    node = node_polling_service.get_node(node_id)
    if node is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Node {node_id} not found"
        )
    return node


@router.get("/healthz", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    nodes = node_polling_service.get_all_nodes()
    return HealthResponse(
        status="healthy",
        nodes=len(nodes),
        active_nodes=sum(1 for node in nodes if node.status == NodeStatus.ACTIVE),
    )


@router.get("/api/v1/nodes", response_model=List[NodeSummary], tags=["Nodes"])
async def list_nodes():
    """List every monitored node."""
    return [
        NodeSummary(
            id=node.id,
            name=node.name,
            status=node.status,
            last_sync=node.last_sync,
            interface_count=len(node.interfaces),
            volume_count=len(node.volumes),
        )
        for node in node_polling_service.get_all_nodes()
    ]


@router.get("/api/v1/nodes/{node_id}", response_model=Node, tags=["Nodes"])
async def get_node(node_id: str):
    """Return the full entity graph for one node."""
    return _get_node_or_404(node_id)


@router.get("/api/v1/nodes/{node_id}/history", response_model=List[str], tags=["History"])
async def list_history_streams(node_id: str):
    """List the history stream names recorded for a node."""
    return _get_node_or_404(node_id).history.streams()


@router.get("/api/v1/nodes/{node_id}/history/{stream:path}", tags=["History"])
async def get_history_stream(
    node_id: str,
    stream: str,
    last: Optional[int] = Query(None, ge=1, description="Return at most this many recent samples"),
    since: Optional[int] = Query(None, description="Only samples at or after this Unix epoch"),
) -> Dict[str, Any]:
    """Return a recent window of one history stream."""
    node = _get_node_or_404(node_id)
    if stream not in node.history:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"History stream {stream} not found for node {node_id}",
        )

    samples = node.history.get(stream, last=last, since=since)
    return {
        "node_id": node_id,
        "stream": stream,
        "capacity": node.history.capacity,
        "samples": [sample.model_dump() for sample in samples],
    }
