"""
Avatar Tree Search
Predicate based lookups over the scene graph.
"""

from collections import deque
from typing import Callable, Iterable, List, Optional

from avatar_scene import Node, SceneGraph


def _walk(graph: SceneGraph, candidates: Iterable[int]):
    # Breadth-first: the candidates first, then their descendants level by level
    queue = deque(candidates)
    while queue:
        handle = queue.popleft()
        node = graph.node(handle)
        yield node
        queue.extend(node.children)


def find_child(graph: SceneGraph, candidates: Iterable[int], predicate: Callable[[Node], bool]) -> Optional[Node]:
    """Return the first node satisfying the predicate, or None."""
    for node in _walk(graph, candidates):
        if predicate(node):
            return node
    return None


def find_children(graph: SceneGraph, candidates: Iterable[int], predicate: Callable[[Node], bool]) -> List[Node]:
    """Return every node satisfying the predicate, in visitation order."""
    return [node for node in _walk(graph, candidates) if predicate(node)]


def find_child_by_name(graph: SceneGraph, root: int, name: str) -> Optional[Node]:
    return find_child(graph, [root], lambda node: node.name == name)


def find_children_by_type(graph: SceneGraph, root: int, node_type: str) -> List[Node]:
    return find_children(graph, [root], lambda node: node.type == node_type)


def has_hubs_component(graph: SceneGraph, node: Node, component_name: str) -> bool:
    """True if the node or any of its descendants carries the named component."""
    return find_child(graph, [node.handle], lambda candidate: component_name in candidate.components) is not None
