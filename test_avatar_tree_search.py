#!/usr/bin/env python3
"""
Test breadth-first scene graph lookups
"""

import sys

import pytest

from avatar_components import UVScroll
from avatar_constants import TYPE_BONE, TYPE_GROUP, TYPE_MESH
from avatar_scene import Node
from avatar_tree_search import (
    find_child,
    find_child_by_name,
    find_children,
    find_children_by_type,
    has_hubs_component,
)


def _tree(graph):
    """root > (a > deep_x, x), names chosen so depth decides the match."""
    root = graph.add_node(Node(name='root', type=TYPE_GROUP))
    a = graph.add_node(Node(name='a', type=TYPE_BONE))
    deep = graph.add_node(Node(name='x', type=TYPE_MESH))
    shallow = graph.add_node(Node(name='x', type=TYPE_BONE))
    graph.add(root, a)
    graph.add(a, deep)
    graph.add(root, shallow)
    return root, a, deep, shallow


def test_find_child_prefers_shallower_nodes(graph):
    root, a, deep, shallow = _tree(graph)
    found = find_child_by_name(graph, root, 'x')
    assert found is graph.node(shallow)


def test_find_child_checks_candidates_themselves(graph):
    root, *_ = _tree(graph)
    assert find_child_by_name(graph, root, 'root') is graph.node(root)


def test_find_child_returns_none_without_match(graph):
    root, *_ = _tree(graph)
    assert find_child_by_name(graph, root, 'missing') is None
    assert find_child(graph, [], lambda node: True) is None


def test_find_children_by_type_in_visitation_order(graph):
    root, a, deep, shallow = _tree(graph)
    bones = find_children_by_type(graph, root, TYPE_BONE)
    assert [bone.handle for bone in bones] == [a, shallow]


def test_find_children_over_several_candidates(graph):
    root, a, deep, shallow = _tree(graph)
    other = graph.add_node(Node(name='other'))
    names = [node.name for node in find_children(graph, [other, a], lambda node: True)]
    assert names == ['other', 'a', 'x']


def test_has_hubs_component_searches_descendants(graph):
    root, a, deep, shallow = _tree(graph)
    graph.node(deep).components[UVScroll.key] = UVScroll(speed=(0.1, 0.0))

    assert has_hubs_component(graph, graph.node(root), UVScroll.key)
    assert has_hubs_component(graph, graph.node(a), UVScroll.key)
    assert not has_hubs_component(graph, graph.node(shallow), UVScroll.key)
    assert not has_hubs_component(graph, graph.node(root), 'loop-animation')


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
