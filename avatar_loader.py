"""
Avatar Asset Loader
Read glTF/GLB body parts into the avatar scene graph using pygltflib.
Other mesh formats (.obj, .ply, .stl, ...) go through trimesh as static meshes.

Skeleton bone order and morph target dictionaries are kept exactly as authored.
"""

import base64
import io
import os
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote

import numpy as np
import pygltflib
import trimesh
from PIL import Image

from avatar_components import components_from_extensions
from avatar_constants import (
    ATTR_NORMAL,
    ATTR_POSITION,
    ATTR_SKIN_INDEX,
    ATTR_UV,
    GLTF_ATTRIBUTES,
    GLTF_MORPH_ATTRIBUTES,
    SCENE_NAME,
    TYPE_BONE,
    TYPE_GROUP,
    TYPE_MESH,
    TYPE_OBJECT,
    TYPE_SKINNED_MESH,
)
from avatar_errors import AvatarError, LoadError, PreconditionError
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

GLTF_EXTENSIONS = ('.gltf', '.glb')

COMPONENT_DTYPES = {
    pygltflib.BYTE: np.int8,
    pygltflib.UNSIGNED_BYTE: np.uint8,
    pygltflib.SHORT: np.int16,
    pygltflib.UNSIGNED_SHORT: np.uint16,
    pygltflib.UNSIGNED_INT: np.uint32,
    pygltflib.FLOAT: np.float32,
}
TYPE_SIZES = {'SCALAR': 1, 'VEC2': 2, 'VEC3': 3, 'VEC4': 4, 'MAT2': 4, 'MAT3': 9, 'MAT4': 16}
# Divisors for normalized integer accessors
NORMALIZED_DIVISORS = {np.int8: 127.0, np.uint8: 255.0, np.int16: 32767.0, np.uint16: 65535.0, np.uint32: 4294967295.0}


def _target_accessor(target, semantic: str) -> Optional[int]:
    # Morph targets may come back as Attributes objects or plain dicts
    if isinstance(target, dict):
        return target.get(semantic)
    return getattr(target, semantic, None)


def _compute_normals(positions: np.ndarray, index: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if index is not None:
        faces = index.reshape(-1, 3)
    elif len(positions) % 3 == 0:
        faces = np.arange(len(positions)).reshape(-1, 3)
    else:
        return None
    mesh = trimesh.Trimesh(vertices=positions, faces=faces, process=False)
    return np.asarray(mesh.vertex_normals, dtype=np.float32)


class GltfSceneReader:
    """Convert one pygltflib document into a SceneGraph."""

    def __init__(self, gltf: pygltflib.GLTF2, base_dir: str = ''):
        self.gltf = gltf
        self.base_dir = base_dir
        self._buffers: Dict[int, bytes] = {}
        self._images: Dict[int, Optional[Image.Image]] = {}
        self._materials: Dict[Optional[int], Material] = {}
        self._skeletons: Dict[int, Skeleton] = {}

    # -- raw data ---------------------------------------------------------

    def _read_uri(self, uri: str) -> bytes:
        if uri.startswith('data:'):
            return base64.b64decode(uri.split(',', 1)[1])
        with open(os.path.join(self.base_dir, unquote(uri)), 'rb') as f:
            return f.read()

    def buffer_bytes(self, index: int) -> bytes:
        if index not in self._buffers:
            buffer = self.gltf.buffers[index]
            if buffer.uri is None:
                blob = self.gltf.binary_blob()
                if blob is None:
                    raise LoadError(f"Buffer {index} has no uri and the file has no binary chunk")
                self._buffers[index] = blob
            else:
                self._buffers[index] = self._read_uri(buffer.uri)
        return self._buffers[index]

    def buffer_view_bytes(self, index: int) -> bytes:
        view = self.gltf.bufferViews[index]
        offset = view.byteOffset or 0
        return self.buffer_bytes(view.buffer)[offset:offset + view.byteLength]

    def read_accessor(self, index: int) -> np.ndarray:
        """Accessor data as a (count, components) array; normalized integers become floats."""
        accessor = self.gltf.accessors[index]
        if accessor.sparse is not None:
            raise LoadError(f"Sparse accessor {index} is not supported")

        dtype = np.dtype(COMPONENT_DTYPES[accessor.componentType]).newbyteorder('<')
        size = TYPE_SIZES[accessor.type]
        count = accessor.count

        if accessor.bufferView is None:
            data = np.zeros((count, size), dtype=dtype)
        else:
            view = self.gltf.bufferViews[accessor.bufferView]
            blob = self.buffer_bytes(view.buffer)
            offset = (view.byteOffset or 0) + (accessor.byteOffset or 0)
            stride = view.byteStride or dtype.itemsize * size
            data = np.ndarray(
                shape=(count, size), dtype=dtype, buffer=blob, offset=offset,
                strides=(stride, dtype.itemsize),
            ).copy()

        if accessor.normalized and dtype.kind in 'iu':
            divisor = NORMALIZED_DIVISORS[dtype.type]
            data = np.maximum(data.astype(np.float32) / divisor, -1.0)
        return data

    # -- materials --------------------------------------------------------

    def _image(self, index: int) -> Optional[Image.Image]:
        if index not in self._images:
            source = self.gltf.images[index]
            if source.bufferView is not None:
                data = self.buffer_view_bytes(source.bufferView)
            elif source.uri:
                data = self._read_uri(source.uri)
            else:
                print(f"WARNING: image {index} has no data, ignoring")
                self._images[index] = None
                return None
            try:
                image = Image.open(io.BytesIO(data))
                image.load()
            except OSError as e:
                raise LoadError(f"Could not decode image {index}: {e}") from e
            self._images[index] = image
        return self._images[index]

    def _texture(self, info) -> Optional[Image.Image]:
        if info is None or info.index is None:
            return None
        texture = self.gltf.textures[info.index]
        if texture.source is None:
            print(f"WARNING: texture {info.index} uses an unsupported image source, ignoring")
            return None
        return self._image(texture.source)

    def material(self, index: Optional[int]) -> Material:
        if index not in self._materials:
            if index is None:
                self._materials[index] = Material(name='default', metalness=1.0, roughness=1.0)
                return self._materials[index]

            source = self.gltf.materials[index]
            material = Material(
                name=source.name or f"material_{index}",
                transparent=source.alphaMode == pygltflib.BLEND,
                metalness=1.0,
                roughness=1.0,
            )
            pbr = source.pbrMetallicRoughness
            if pbr is not None:
                if pbr.baseColorFactor is not None:
                    material.color = tuple(float(c) for c in pbr.baseColorFactor)
                if pbr.metallicFactor is not None:
                    material.metalness = float(pbr.metallicFactor)
                if pbr.roughnessFactor is not None:
                    material.roughness = float(pbr.roughnessFactor)
                material.map = self._texture(pbr.baseColorTexture)
                metallic_roughness = self._texture(pbr.metallicRoughnessTexture)
                material.roughness_map = metallic_roughness
                material.metalness_map = metallic_roughness
            material.normal_map = self._texture(source.normalTexture)
            material.ao_map = self._texture(source.occlusionTexture)
            self._materials[index] = material
        return self._materials[index]

    # -- nodes ------------------------------------------------------------

    def node_name(self, index: int) -> str:
        return self.gltf.nodes[index].name or f"node_{index}"

    def _set_transform(self, node: Node, source: pygltflib.Node) -> None:
        if source.matrix is not None:
            node.set_matrix(np.asarray(source.matrix, dtype=float).reshape(4, 4).T)
            return
        if source.translation is not None:
            node.translation = np.asarray(source.translation, dtype=float)
        if source.rotation is not None:
            node.rotation = np.asarray(source.rotation, dtype=float)
        if source.scale is not None:
            node.scale = np.asarray(source.scale, dtype=float)

    def _geometry(self, primitive: pygltflib.Primitive) -> Geometry:
        if primitive.mode not in (None, pygltflib.TRIANGLES):
            raise LoadError(f"Primitive mode {primitive.mode} is not supported, only triangles")

        geometry = Geometry()
        for semantic, name in GLTF_ATTRIBUTES.items():
            accessor = getattr(primitive.attributes, semantic, None)
            if accessor is None:
                continue
            data = self.read_accessor(accessor)
            dtype = np.uint16 if name == ATTR_SKIN_INDEX else np.float32
            geometry.attributes[name] = BufferAttribute(data.astype(dtype), data.shape[1])
        if ATTR_POSITION not in geometry.attributes:
            raise LoadError("Primitive has no POSITION attribute")

        if primitive.indices is not None:
            geometry.index = self.read_accessor(primitive.indices).reshape(-1).astype(np.uint32)

        if ATTR_NORMAL not in geometry.attributes:
            normals = _compute_normals(geometry.attributes[ATTR_POSITION].items(), geometry.index)
            if normals is not None:
                geometry.attributes[ATTR_NORMAL] = BufferAttribute(normals, 3)

        # Relative morph targets; targets missing an attribute get zero deltas
        targets = primitive.targets or []
        for semantic, name in GLTF_MORPH_ATTRIBUTES.items():
            if not any(_target_accessor(target, semantic) is not None for target in targets):
                continue
            base = geometry.attributes.get(name)
            if base is None:
                continue
            buffers = []
            for target in targets:
                accessor = _target_accessor(target, semantic)
                if accessor is None:
                    buffers.append(BufferAttribute(np.zeros_like(base.array, dtype=np.float32), base.item_size))
                else:
                    delta = self.read_accessor(accessor)
                    buffers.append(BufferAttribute(delta.astype(np.float32), delta.shape[1]))
            geometry.morph_attributes[name] = buffers
        geometry.morph_targets_relative = True
        return geometry

    def _mesh_node(self, name: str, source: pygltflib.Node, mesh: pygltflib.Mesh,
                   primitive: pygltflib.Primitive) -> MeshNode:
        geometry = self._geometry(primitive)
        node = MeshNode(
            name=name,
            type=TYPE_SKINNED_MESH if source.skin is not None else TYPE_MESH,
            geometry=geometry,
            material=self.material(primitive.material),
        )

        slot_count = geometry.morph_slot_count
        if slot_count:
            weights = source.weights or mesh.weights or []
            node.morph_target_influences = [
                float(weights[i]) if i < len(weights) else 0.0 for i in range(slot_count)
            ]
            # Unnamed targets stay out of the dictionary; merging names them after the mesh
            target_names = (mesh.extras or {}).get('targetNames') or []
            node.morph_target_dictionary = {
                target_names[i]: i for i in range(min(slot_count, len(target_names))) if target_names[i]
            }
        return node

    def _skeleton(self, skin_index: int, node_handles: Dict[int, int]) -> Skeleton:
        if skin_index not in self._skeletons:
            skin = self.gltf.skins[skin_index]
            bones = []
            for joint in skin.joints:
                if joint not in node_handles:
                    raise LoadError(f"Skin {skin_index} joint {joint} is not part of the scene")
                bones.append(node_handles[joint])
            if skin.inverseBindMatrices is not None:
                matrices = self.read_accessor(skin.inverseBindMatrices).astype(float)
                inverses = [m.reshape(4, 4).T for m in matrices]
            else:
                inverses = [np.eye(4) for _ in bones]
            self._skeletons[skin_index] = Skeleton(bones, inverses)
        return self._skeletons[skin_index]

    def _animations(self) -> List[AnimationClip]:
        clips = []
        for i, animation in enumerate(self.gltf.animations or []):
            clip = AnimationClip(name=animation.name or f"animation_{i}")
            for channel in animation.channels:
                target = channel.target
                if target is None or target.node is None:
                    continue
                sampler = animation.samplers[channel.sampler]
                clip.tracks.append(KeyframeTrack(
                    node_name=self.node_name(target.node),
                    path=target.path,
                    times=self.read_accessor(sampler.input).reshape(-1).astype(np.float32),
                    values=self.read_accessor(sampler.output).reshape(-1).astype(np.float32),
                    interpolation=sampler.interpolation or 'LINEAR',
                ))
            clips.append(clip)
        return clips

    def read(self) -> Tuple[SceneGraph, int]:
        gltf = self.gltf
        if not gltf.scenes:
            raise LoadError("File contains no scenes")
        scene = gltf.scenes[gltf.scene if gltf.scene is not None else 0]

        graph = SceneGraph()
        root = graph.add_node(Node(name=scene.name or SCENE_NAME, type=TYPE_GROUP))
        joints = {joint for skin in gltf.skins or [] for joint in skin.joints}

        node_handles: Dict[int, int] = {}
        pending_skins: List[Tuple[MeshNode, int]] = []
        stack = [(index, root) for index in reversed(scene.nodes or [])]
        while stack:
            index, parent = stack.pop()
            source = gltf.nodes[index]
            name = self.node_name(index)

            primitives = []
            if source.mesh is not None:
                mesh = gltf.meshes[source.mesh]
                primitives = [(mesh, primitive) for primitive in mesh.primitives]
            if len(primitives) == 1:
                node = self._mesh_node(name, source, *primitives[0])
            else:
                node_type = TYPE_BONE if index in joints else (TYPE_GROUP if primitives else TYPE_OBJECT)
                node = Node(name=name, type=node_type)
            self._set_transform(node, source)
            node.components = components_from_extensions(source.extensions)

            handle = graph.add_node(node)
            node_handles[index] = handle
            graph.add(parent, handle)

            if len(primitives) > 1:
                for i, (mesh, primitive) in enumerate(primitives):
                    child = self._mesh_node(f"{name}_{i}", source, mesh, primitive)
                    graph.add(handle, graph.add_node(child))
                    if source.skin is not None:
                        pending_skins.append((child, source.skin))
            elif primitives and source.skin is not None:
                pending_skins.append((node, source.skin))

            for child_index in reversed(source.children or []):
                stack.append((child_index, handle))

        for mesh_node, skin_index in pending_skins:
            mesh_node.bind(self._skeleton(skin_index, node_handles))

        graph.node(root).animations = self._animations()
        return graph, root


def load_static_mesh(path: str) -> Tuple[SceneGraph, int]:
    """Load a non-glTF mesh with trimesh as an unskinned Mesh under a group named after the file."""
    try:
        loaded = trimesh.load(path, force='mesh')
    except Exception as e:
        raise LoadError(f"trimesh failed to load {path}: {e}") from e
    if not isinstance(loaded, trimesh.Trimesh) or len(loaded.vertices) == 0:
        raise LoadError(f"{path} contains no mesh data")

    name = os.path.splitext(os.path.basename(path))[0]
    geometry = Geometry()
    geometry.attributes[ATTR_POSITION] = BufferAttribute(np.asarray(loaded.vertices, dtype=np.float32), 3)
    geometry.attributes[ATTR_NORMAL] = BufferAttribute(np.asarray(loaded.vertex_normals, dtype=np.float32), 3)
    geometry.index = np.asarray(loaded.faces, dtype=np.uint32).reshape(-1)

    material = Material(name=name)
    uv = getattr(loaded.visual, 'uv', None)
    if uv is not None and len(uv) == len(loaded.vertices):
        # trimesh keeps the bottom-left origin of OBJ; glTF samples from the top-left
        uv = np.asarray(uv, dtype=np.float32).copy()
        uv[:, 1] = 1.0 - uv[:, 1]
        geometry.attributes[ATTR_UV] = BufferAttribute(uv, 2)
        source_material = getattr(loaded.visual, 'material', None)
        image = getattr(source_material, 'baseColorTexture', None) or getattr(source_material, 'image', None)
        if image is not None:
            material.map = image

    graph = SceneGraph()
    root = graph.add_node(Node(name=name, type=TYPE_GROUP))
    graph.add(root, graph.add_node(MeshNode(name=name, type=TYPE_MESH, geometry=geometry, material=material)))
    return graph, root


def load_scene(path: str) -> Tuple[SceneGraph, int]:
    """Load any supported asset file; returns the graph and its root group handle."""
    if not os.path.isfile(path):
        raise LoadError(f"File not found: {path}")

    if not path.lower().endswith(GLTF_EXTENSIONS):
        return load_static_mesh(path)

    try:
        gltf = pygltflib.GLTF2.load(path)
        if gltf is None:
            raise LoadError(f"pygltflib could not parse {path}")
        return GltfSceneReader(gltf, os.path.dirname(path)).read()
    except AvatarError:
        raise
    except Exception as e:
        raise LoadError(f"Failed to load {path}: {e}") from e


def load_animation_clip(path: str, name: str) -> AnimationClip:
    """First clip of an animation file, renamed."""
    graph, root = load_scene(path)
    clips = graph.node(root).animations
    if not clips:
        raise PreconditionError(f"{path} contains no animation clips")
    clip = clips[0]
    clip.name = name
    return clip
