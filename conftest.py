"""
Shared builders for the avatar tests: a three bone skeleton, small skinned
triangles with optional morphs, and complete Scene/AvatarRoot parts.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest
from PIL import Image

from avatar_constants import (
    ATTR_NORMAL,
    ATTR_POSITION,
    ATTR_SKIN_INDEX,
    ATTR_SKIN_WEIGHT,
    ATTR_UV,
    AVATAR_ROOT_NAME,
    SCENE_NAME,
    TYPE_BONE,
    TYPE_GROUP,
    TYPE_MESH,
    TYPE_SKINNED_MESH,
)
from avatar_gltf_exporter import export_gltf
from avatar_scene import (
    AnimationClip,
    BufferAttribute,
    Geometry,
    KeyframeTrack,
    Material,
    MeshNode,
    Node,
    SceneGraph,
    Skeleton,
)

BONE_NAMES = ('Hips', 'Spine', 'Head')
TRIANGLE = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], dtype=np.float32)


def build_skeleton(graph: SceneGraph, names: Sequence[str] = BONE_NAMES) -> Skeleton:
    """A straight chain: the root at y=1, every child 0.5 above its parent."""
    bones = []
    for i, name in enumerate(names):
        bone = Node(name=name, type=TYPE_BONE, translation=np.array([0.0, 1.0 if i == 0 else 0.5, 0.0]))
        handle = graph.add_node(bone)
        if bones:
            graph.add(bones[-1], handle)
        bones.append(handle)
    skeleton = Skeleton(bones)
    skeleton.calculate_inverses(graph)
    return skeleton


def build_mesh(graph: SceneGraph, name: str, skeleton: Optional[Skeleton] = None,
               offset=(0.0, 0.0, 0.0), morphs: Optional[List[tuple]] = None,
               color=(1.0, 1.0, 1.0, 1.0), transparent: bool = False, uv: bool = True,
               components: Optional[Dict] = None, texture: Optional[Image.Image] = None,
               roughness: float = 1.0) -> MeshNode:
    """One triangle; `morphs` is a list of (name, position delta, weight)."""
    geometry = Geometry()
    geometry.attributes[ATTR_POSITION] = BufferAttribute(TRIANGLE + np.asarray(offset, dtype=np.float32), 3)
    geometry.attributes[ATTR_NORMAL] = BufferAttribute(np.tile([0.0, 0.0, 1.0], (3, 1)).astype(np.float32), 3)
    if uv:
        geometry.attributes[ATTR_UV] = BufferAttribute(np.array([[0, 0], [1, 0], [0, 1]], dtype=np.float32), 2)
    geometry.index = np.array([0, 1, 2], dtype=np.uint32)

    if skeleton is not None:
        geometry.attributes[ATTR_SKIN_INDEX] = BufferAttribute(np.zeros((3, 4), dtype=np.uint16), 4)
        weights = np.zeros((3, 4), dtype=np.float32)
        weights[:, 0] = 1.0
        geometry.attributes[ATTR_SKIN_WEIGHT] = BufferAttribute(weights, 4)

    mesh = MeshNode(
        name=name,
        type=TYPE_SKINNED_MESH if skeleton is not None else TYPE_MESH,
        geometry=geometry,
        material=Material(name=f"{name}_material", color=tuple(color), transparent=transparent,
                          map=texture, roughness=roughness),
        components=dict(components or {}),
    )
    if morphs:
        deltas = []
        mesh.morph_target_influences = []
        mesh.morph_target_dictionary = {}
        for slot, (morph_name, delta, weight) in enumerate(morphs):
            delta = np.broadcast_to(np.asarray(delta, dtype=np.float32), (3, 3))
            deltas.append(BufferAttribute(delta.copy(), 3))
            mesh.morph_target_influences.append(weight)
            mesh.morph_target_dictionary[morph_name] = slot
        geometry.morph_attributes[ATTR_POSITION] = deltas

    graph.add_node(mesh)
    if skeleton is not None:
        mesh.bind(skeleton)
    return mesh


def build_part(graph: SceneGraph, meshes: List[Dict], clips: Sequence[str] = (),
               components: Optional[Dict] = None, bone_names: Sequence[str] = BONE_NAMES,
               with_avatar_root: bool = True) -> int:
    """Scene > AvatarRoot > (root bone, skinned meshes); returns the Scene handle."""
    scene = graph.add_node(Node(name=SCENE_NAME, type=TYPE_GROUP))
    parent = scene
    if with_avatar_root:
        parent = graph.add_node(Node(name=AVATAR_ROOT_NAME, components=dict(components or {})))
        graph.add(scene, parent)

    skeleton = build_skeleton(graph, bone_names)
    graph.add(parent, skeleton.root_bone)
    for mesh_kwargs in meshes:
        mesh = build_mesh(graph, skeleton=skeleton, **mesh_kwargs)
        graph.add(parent, mesh.handle)

    graph.node(scene).animations = [
        AnimationClip(name, [KeyframeTrack(
            node_name=bone_names[0],
            path='rotation',
            times=np.array([0.0, 1.0], dtype=np.float32),
            values=np.array([0, 0, 0, 1, 0, 0.7071068, 0, 0.7071068], dtype=np.float32),
        )])
        for name in clips
    ]
    return scene


def write_part(path: str, meshes: List[Dict], clips: Sequence[str] = (),
               components: Optional[Dict] = None) -> str:
    """Build a part in its own arena and write it as GLB."""
    graph = SceneGraph()
    scene = build_part(graph, meshes, clips, components)
    with open(path, 'wb') as f:
        f.write(export_gltf(graph, scene))
    return str(path)


@pytest.fixture
def graph():
    return SceneGraph()


@pytest.fixture
def skeleton_factory():
    return build_skeleton


@pytest.fixture
def mesh_factory():
    return build_mesh


@pytest.fixture
def part_factory():
    return build_part


@pytest.fixture
def part_file(tmp_path):
    def factory(name: str, meshes: List[Dict], clips: Sequence[str] = (), components: Optional[Dict] = None) -> str:
        return write_part(str(tmp_path / name), meshes, clips, components)
    return factory
