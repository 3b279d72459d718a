"""
Avatar Scene Graph
In-memory scene model shared by the loader, the combiner and the exporter.

Nodes live in a SceneGraph arena and reference their parent and children by
integer handle, so cloning a subtree is a matter of remapping handles.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np
import trimesh

from avatar_constants import ATTR_POSITION, TYPE_BONE, TYPE_MESH, TYPE_OBJECT, TYPE_SKINNED_MESH
from avatar_errors import PreconditionError


@dataclass(eq=False)
class BufferAttribute:
    array: np.ndarray
    item_size: int
    normalized: bool = False

    def __post_init__(self):
        self.array = np.asarray(self.array).reshape(-1)

    @property
    def count(self) -> int:
        return len(self.array) // self.item_size

    def items(self) -> np.ndarray:
        return self.array.reshape(-1, self.item_size)

    def clone(self) -> 'BufferAttribute':
        return BufferAttribute(self.array.copy(), self.item_size, self.normalized)


@dataclass(eq=False)
class Geometry:
    attributes: Dict[str, BufferAttribute] = field(default_factory=dict)
    index: Optional[np.ndarray] = None
    # base attribute name -> one delta (or absolute) buffer per morph slot
    morph_attributes: Dict[str, List[BufferAttribute]] = field(default_factory=dict)
    morph_targets_relative: bool = True

    @property
    def vertex_count(self) -> int:
        position = self.attributes.get(ATTR_POSITION)
        return position.count if position is not None else 0

    @property
    def morph_slot_count(self) -> int:
        return max((len(buffers) for buffers in self.morph_attributes.values()), default=0)

    def clone(self) -> 'Geometry':
        return Geometry(
            attributes={name: attr.clone() for name, attr in self.attributes.items()},
            index=None if self.index is None else self.index.copy(),
            morph_attributes={
                name: [buffer.clone() for buffer in buffers]
                for name, buffers in self.morph_attributes.items()
            },
            morph_targets_relative=self.morph_targets_relative,
        )


@dataclass(eq=False)
class Material:
    name: str = ''
    transparent: bool = False
    color: Tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    metalness: float = 0.0
    roughness: float = 1.0
    # PIL images
    map: Any = None
    normal_map: Any = None
    ao_map: Any = None
    roughness_map: Any = None
    metalness_map: Any = None


@dataclass(eq=False)
class KeyframeTrack:
    node_name: str
    path: str  # translation, rotation, scale or weights
    times: np.ndarray
    values: np.ndarray
    interpolation: str = 'LINEAR'


@dataclass(eq=False)
class AnimationClip:
    name: str
    tracks: List[KeyframeTrack] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return max((float(track.times[-1]) for track in self.tracks if len(track.times)), default=0.0)


@dataclass(frozen=True)
class AtlasPlacement:
    """Destination rectangle of one mesh inside the texture atlas (normalized UV space)."""
    min: Tuple[float, float]
    max: Tuple[float, float]


def compose_matrix(translation, rotation, scale) -> np.ndarray:
    """Build a 4x4 matrix from translation, xyzw quaternion and scale."""
    x, y, z, w = rotation
    matrix = trimesh.transformations.quaternion_matrix([w, x, y, z])
    matrix[:3, :3] = matrix[:3, :3] * np.asarray(scale, dtype=float)
    matrix[:3, 3] = translation
    return matrix


def decompose_matrix(matrix) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Split an affine 4x4 matrix into translation, xyzw quaternion and scale."""
    matrix = np.asarray(matrix, dtype=float)
    translation = matrix[:3, 3].copy()
    scale = np.linalg.norm(matrix[:3, :3], axis=0)
    if np.linalg.det(matrix[:3, :3]) < 0:
        scale[0] = -scale[0]
    rotation_matrix = np.eye(4)
    safe_scale = np.where(scale == 0, 1.0, scale)
    rotation_matrix[:3, :3] = matrix[:3, :3] / safe_scale
    w, x, y, z = trimesh.transformations.quaternion_from_matrix(rotation_matrix)
    return translation, np.array([x, y, z, w]), scale


@dataclass(eq=False)
class Node:
    name: str = ''
    type: str = TYPE_OBJECT
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))
    scale: np.ndarray = field(default_factory=lambda: np.ones(3))
    # component name -> authoring component (see avatar_components)
    components: Dict[str, Any] = field(default_factory=dict)
    animations: List[AnimationClip] = field(default_factory=list)
    handle: int = -1

    def matrix(self) -> np.ndarray:
        return compose_matrix(self.translation, self.rotation, self.scale)

    def set_matrix(self, matrix) -> None:
        self.translation, self.rotation, self.scale = decompose_matrix(matrix)

    def clone(self) -> 'Node':
        """Shallow clone: same transform, components and clips, no parent or children."""
        node = copy.copy(self)
        node.parent = None
        node.children = []
        node.handle = -1
        node.translation = self.translation.copy()
        node.rotation = self.rotation.copy()
        node.scale = self.scale.copy()
        node.components = dict(self.components)
        node.animations = list(self.animations)
        return node


@dataclass(eq=False)
class Skeleton:
    bones: List[int]
    bone_inverses: List[np.ndarray] = field(default_factory=list)

    @property
    def root_bone(self) -> int:
        return self.bones[0]

    def calculate_inverses(self, graph: 'SceneGraph') -> None:
        self.bone_inverses = [np.linalg.inv(graph.world_matrix(bone)) for bone in self.bones]

    def pose(self, graph: 'SceneGraph') -> None:
        """Reset every bone's local transform to the bind pose."""
        if len(self.bone_inverses) != len(self.bones):
            self.calculate_inverses(graph)

        worlds = {bone: np.linalg.inv(inverse) for bone, inverse in zip(self.bones, self.bone_inverses)}
        for bone in self.bones:
            node = graph.node(bone)
            world = worlds[bone]
            if node.parent is not None and graph.node(node.parent).type == TYPE_BONE:
                parent_world = worlds.get(node.parent)
                if parent_world is None:
                    parent_world = graph.world_matrix(node.parent)
                node.set_matrix(np.linalg.inv(parent_world) @ world)
            else:
                node.set_matrix(world)


@dataclass(eq=False)
class MeshNode(Node):
    type: str = TYPE_MESH
    geometry: Geometry = field(default_factory=Geometry)
    material: Material = field(default_factory=Material)
    skeleton: Optional[Skeleton] = None
    morph_target_influences: Optional[List[float]] = None
    morph_target_dictionary: Optional[Dict[str, int]] = None

    @property
    def is_skinned(self) -> bool:
        return self.type == TYPE_SKINNED_MESH

    def bind(self, skeleton: Skeleton) -> None:
        self.skeleton = skeleton

    def clone(self) -> 'MeshNode':
        """Shallow clone sharing geometry, material and skeleton."""
        node = super().clone()
        if self.morph_target_influences is not None:
            node.morph_target_influences = list(self.morph_target_influences)
        if self.morph_target_dictionary is not None:
            node.morph_target_dictionary = dict(self.morph_target_dictionary)
        return node


class SceneGraph:
    """Arena owning every node of one pipeline invocation."""

    def __init__(self):
        self.nodes: List[Node] = []

    def __len__(self) -> int:
        return len(self.nodes)

    def add_node(self, node: Node) -> int:
        node.handle = len(self.nodes)
        self.nodes.append(node)
        return node.handle

    def node(self, handle: int) -> Node:
        return self.nodes[handle]

    def add(self, parent: int, child: int) -> None:
        """Attach child under parent, detaching it from its previous parent."""
        if parent == child:
            raise PreconditionError(f"Node {parent} cannot be its own child")
        node = self.nodes[child]
        if node.parent is not None:
            self.remove(node.parent, child)
        node.parent = parent
        self.nodes[parent].children.append(child)

    def remove(self, parent: int, child: int) -> None:
        parent_node = self.nodes[parent]
        if child in parent_node.children:
            parent_node.children.remove(child)
            self.nodes[child].parent = None

    def clone_node(self, handle: int) -> int:
        return self.add_node(self.nodes[handle].clone())

    def traverse(self, handle: int) -> Iterator[int]:
        """Pre-order walk of a subtree."""
        stack = [handle]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(self.nodes[current].children))

    def world_matrix(self, handle: int) -> np.ndarray:
        matrix = np.eye(4)
        current: Optional[int] = handle
        while current is not None:
            node = self.nodes[current]
            matrix = node.matrix() @ matrix
            current = node.parent
        return matrix

    def adopt(self, other: 'SceneGraph', root: int) -> int:
        """Copy the subtree of another arena rooted at `root` into this one."""
        handles = list(other.traverse(root))
        remap: Dict[int, int] = {}
        for handle in handles:
            remap[handle] = self.add_node(other.node(handle).clone())
        for handle in handles:
            for child in other.node(handle).children:
                self.add(remap[handle], remap[child])

        skeletons: Dict[int, Skeleton] = {}
        for handle in handles:
            node = self.nodes[remap[handle]]
            if not isinstance(node, MeshNode) or node.skeleton is None:
                continue
            key = id(node.skeleton)
            if key not in skeletons:
                missing = [bone for bone in node.skeleton.bones if bone not in remap]
                if missing:
                    raise PreconditionError(
                        f"Skeleton of '{node.name}' references bones outside the adopted subtree"
                    )
                skeletons[key] = Skeleton(
                    [remap[bone] for bone in node.skeleton.bones],
                    [inverse.copy() for inverse in node.skeleton.bone_inverses],
                )
            node.skeleton = skeletons[key]
        return remap[root]
