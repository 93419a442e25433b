"""
Graph building and validation.

Turns a WorkflowDefinition into a networkx DiGraph, reports dangling
references and cycles, and produces the execution order the engine walks.
"""

from __future__ import annotations

import logging
from typing import Dict, List

import networkx as nx

from ...exceptions import GraphValidationError
from .steps import WorkflowDefinition

logger = logging.getLogger(__name__)


def to_dag(definition: WorkflowDefinition) -> nx.DiGraph:
    """Convert workflow definition to a directed graph.

    Nodes keep their definition index as the ``position`` attribute so the
    execution order is deterministic. Edges carry the connected slot pairs.
    """
    dag = nx.DiGraph()

    for position, node in enumerate(definition.nodes):
        dag.add_node(node.id, position=position, type=node.type)

    for conn in definition.connections:
        if dag.has_edge(conn.source_node_id, conn.target_node_id):
            dag.edges[conn.source_node_id, conn.target_node_id]["slots"].append(
                (conn.source_slot, conn.target_slot)
            )
        else:
            dag.add_edge(
                conn.source_node_id,
                conn.target_node_id,
                slots=[(conn.source_slot, conn.target_slot)],
            )

    return dag


def find_problems(definition: WorkflowDefinition) -> List[str]:
    """Collect every definitional problem.

    Returns:
        Human-readable problem descriptions; empty when the definition is valid
    """
    problems: List[str] = []
    nodes = {node.id: node for node in definition.nodes}

    target_slots: Dict[tuple, int] = {}
    for conn in definition.connections:
        if conn.source_node_id not in nodes:
            problems.append(
                f"connection references missing source node '{conn.source_node_id}'"
            )
        if conn.target_node_id not in nodes:
            problems.append(
                f"connection references missing target node '{conn.target_node_id}'"
            )
            continue
        if conn.source_node_id == conn.target_node_id:
            problems.append(f"node '{conn.target_node_id}' is connected to itself")
        if conn.target_slot not in nodes[conn.target_node_id].inputs:
            problems.append(
                f"connection targets undeclared slot '{conn.target_slot}' "
                f"on node '{conn.target_node_id}'"
            )
        key = (conn.target_node_id, conn.target_slot)
        target_slots[key] = target_slots.get(key, 0) + 1

    for (node_id, slot), count in target_slots.items():
        if count > 1:
            problems.append(f"slot '{slot}' on node '{node_id}' has {count} incoming connections")

    for binding in definition.inputs:
        node = nodes.get(binding.target_node_id)
        if node is None:
            problems.append(
                f"workflow input '{binding.name}' targets missing node '{binding.target_node_id}'"
            )
        elif binding.target_slot not in node.inputs:
            problems.append(
                f"workflow input '{binding.name}' targets undeclared slot "
                f"'{binding.target_slot}' on node '{binding.target_node_id}'"
            )

    for binding in definition.outputs:
        if binding.source_node_id not in nodes:
            problems.append(
                f"workflow output '{binding.name}' reads missing node '{binding.source_node_id}'"
            )

    if not problems:
        dag = to_dag(definition)
        if not nx.is_directed_acyclic_graph(dag):
            cycle = nx.find_cycle(dag)
            path = " -> ".join([edge[0] for edge in cycle] + [cycle[0][0]])
            problems.append(f"workflow contains a cycle: {path}")

    return problems


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise GraphValidationError if the definition has any problem."""
    problems = find_problems(definition)
    if problems:
        raise GraphValidationError(problems)


def build_execution_order(definition: WorkflowDefinition) -> List[str]:
    """Validate the definition and return a topologically sorted node order.

    Ties between independent nodes are broken by their position in the
    definition, so the same definition always yields the same order.

    Raises:
        GraphValidationError: If the definition has dangling references or cycles
    """
    validate_definition(definition)
    dag = to_dag(definition)
    order = list(
        nx.lexicographical_topological_sort(dag, key=lambda node_id: dag.nodes[node_id]["position"])
    )
    logger.debug(f"Execution order for {definition.id}: {' -> '.join(order)}")
    return order


def execution_levels(definition: WorkflowDefinition) -> List[List[str]]:
    """Group nodes into levels whose members have no dependencies on each other."""
    validate_definition(definition)
    dag = to_dag(definition)
    return [
        sorted(generation, key=lambda node_id: dag.nodes[node_id]["position"])
        for generation in nx.topological_generations(dag)
    ]
