"""
Graph utilities: adjacency building, topological ordering and save-time validation.

Nodes run strictly one after another in the order produced by
topological_sort(); independent branches are not parallelized.
"""

import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Iterable, List, Sequence, Tuple

from pydantic import ValidationError

from .exceptions import CycleError, PortIncompatibilityError, WorkflowValidationError
from .nodes import get_node_kind, is_port_compatible

logger = logging.getLogger(__name__)

MAX_NODES = 50
MAX_EDGES = 200
MAX_CONFIG_CHARS = 50_000


@dataclass(frozen=True)
class EdgeRef:
    source: Hashable
    source_port: str
    target: Hashable
    target_port: str


def build_graph(
    node_ids: Sequence[Hashable], edges: Iterable[EdgeRef]
) -> Tuple[Dict[Hashable, List[Hashable]], Dict[Hashable, int]]:
    """
    Build adjacency list and in-degree map.

    Edges whose endpoints are not in node_ids are ignored.
    """
    adjacency: Dict[Hashable, List[Hashable]] = {node_id: [] for node_id in node_ids}
    in_degree: Dict[Hashable, int] = {node_id: 0 for node_id in node_ids}

    for edge in edges:
        if edge.source not in adjacency or edge.target not in adjacency:
            continue
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    return adjacency, in_degree


def topological_sort(node_ids: Sequence[Hashable], edges: Iterable[EdgeRef]) -> List[Hashable]:
    """
    Kahn's algorithm. Nodes that become ready at the same time keep their
    declared order.

    Raises:
        CycleError: some nodes could not be ordered
    """
    adjacency, in_degree = build_graph(node_ids, edges)

    queue = deque(node_id for node_id in node_ids if in_degree[node_id] == 0)
    order: List[Hashable] = []

    while queue:
        current = queue.popleft()
        order.append(current)
        for neighbor in adjacency[current]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) != len(node_ids):
        ordered = set(order)
        unordered = [node_id for node_id in node_ids if node_id not in ordered]
        raise CycleError(
            f"Workflow contains a cycle involving nodes {unordered}",
            unordered_nodes=unordered,
        )

    return order


def validate_graph(nodes: Sequence[Dict[str, Any]], edges: Sequence[Dict[str, Any]]) -> List[EdgeRef]:
    """
    Validate a full graph before it is saved.

    Args:
        nodes: [{"key": "n1", "node_type": "generate_image", "config": {...}}, ...]
        edges: [{"source": "n1", "source_port": "images", "target": "n2", "target_port": "images"}, ...]

    Returns:
        The edges as EdgeRef objects keyed by node key

    Raises:
        WorkflowValidationError, PortIncompatibilityError, CycleError
    """
    if len(nodes) > MAX_NODES:
        raise WorkflowValidationError(f"Too many nodes ({len(nodes)} > {MAX_NODES})")
    if len(edges) > MAX_EDGES:
        raise WorkflowValidationError(f"Too many edges ({len(edges)} > {MAX_EDGES})")

    kinds = {}
    for node in nodes:
        key = node.get("key")
        if key is None:
            raise WorkflowValidationError("Every node needs a key")
        if key in kinds:
            raise WorkflowValidationError(f"Duplicate node key '{key}'", node_id=str(key))

        kind = get_node_kind(node.get("node_type"))

        config = node.get("config") or {}
        if len(json.dumps(config)) > MAX_CONFIG_CHARS:
            raise WorkflowValidationError(f"Config of node '{key}' is too large", node_id=str(key))
        try:
            kind.parse_config(config)
        except ValidationError as e:
            raise WorkflowValidationError(
                f"Invalid config for node '{key}' ({kind.kind}): {e.errors()[0]['msg']}",
                node_id=str(key),
            )

        kinds[key] = kind

    edge_refs = []
    connected_inputs = set()
    for edge in edges:
        source, target = edge.get("source"), edge.get("target")
        if source not in kinds or target not in kinds:
            raise WorkflowValidationError(f"Edge references unknown node ({source} -> {target})")

        source_port = kinds[source].output_port(edge.get("source_port"))
        target_port = kinds[target].input_port(edge.get("target_port"))
        if source_port is None:
            raise WorkflowValidationError(
                f"Node '{source}' ({kinds[source].kind}) has no output port '{edge.get('source_port')}'"
            )
        if target_port is None:
            raise WorkflowValidationError(
                f"Node '{target}' ({kinds[target].kind}) has no input port '{edge.get('target_port')}'"
            )
        if not is_port_compatible(source_port.type, target_port.type):
            raise PortIncompatibilityError(
                f"Cannot connect {source_port.type} output '{source}.{source_port.name}' "
                f"to {target_port.type} input '{target}.{target_port.name}'",
                source_type=source_port.type,
                target_type=target_port.type,
            )
        if (target, target_port.name) in connected_inputs:
            raise WorkflowValidationError(f"Input '{target}.{target_port.name}' already has a connection")
        connected_inputs.add((target, target_port.name))

        edge_refs.append(EdgeRef(source, source_port.name, target, target_port.name))

    topological_sort([node["key"] for node in nodes], edge_refs)
    return edge_refs
