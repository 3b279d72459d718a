"""
Avatar glTF Exporter
Write an avatar scene graph to glTF 2.0 / GLB with pygltflib.

Skins keep the skeleton's bone order, morph target names travel in
mesh.extras.targetNames and authoring components in the
MOZ_hubs_components node extension.
"""

import io
from typing import Dict, List, Optional

import numpy as np
from PIL import Image
from pygltflib import GLTF2, Scene, Accessor, BufferView, Buffer, BufferFormat
from pygltflib import Node as GltfNode, Mesh as GltfMesh, Primitive, Attributes, Skin
from pygltflib import Material as GltfMaterial, PbrMetallicRoughness, TextureInfo
from pygltflib import NormalMaterialTexture, OcclusionTextureInfo
from pygltflib import Image as GltfImage, Texture, Sampler
from pygltflib import Animation, AnimationChannel, AnimationChannelTarget, AnimationSampler
from pygltflib import ARRAY_BUFFER, ELEMENT_ARRAY_BUFFER
from pygltflib import FLOAT, UNSIGNED_SHORT, UNSIGNED_INT
from pygltflib import TRIANGLES, BLEND, OPAQUE, LINEAR, REPEAT, LINEAR_MIPMAP_LINEAR

from avatar_components import components_to_extensions
from avatar_constants import (
    ATTR_POSITION,
    ATTR_SKIN_INDEX,
    ATTR_SKIN_WEIGHT,
    GLTF_ATTRIBUTES,
    GLTF_MORPH_ATTRIBUTES,
    HUBS_COMPONENTS_EXTENSION,
)
from avatar_errors import ExportError
from avatar_scene import AnimationClip, Material, MeshNode, SceneGraph, Skeleton
from avatar_scene_assembly import add_non_duplicate_animation_clips

ACCESSOR_DTYPES = {FLOAT: '<f4', UNSIGNED_SHORT: '<u2', UNSIGNED_INT: '<u4'}
ACCESSOR_TYPES = {1: 'SCALAR', 2: 'VEC2', 3: 'VEC3', 4: 'VEC4', 16: 'MAT4'}
TRACK_ITEM_SIZES = {'translation': 3, 'rotation': 4, 'scale': 3}
SKIN_ATTRIBUTES = (ATTR_SKIN_INDEX, ATTR_SKIN_WEIGHT)


class GltfBuilder:
    """Accumulates one GLTF2 document and its binary chunk."""

    def __init__(self, graph: SceneGraph):
        self.graph = graph
        self.gltf = GLTF2()
        self.blob = bytearray()
        self.node_indices: Dict[int, int] = {}
        self.node_names: Dict[str, int] = {}
        self._materials: Dict[int, int] = {}
        self._textures: Dict[int, int] = {}
        self._skins: Dict[int, int] = {}
        self._sampler: Optional[int] = None

    # -- binary data ------------------------------------------------------

    def _add_buffer_view(self, data: bytes, target: Optional[int] = None) -> int:
        # Accessor offsets must stay 4-byte aligned
        self.blob.extend(b'\x00' * (-len(self.blob) % 4))
        view = BufferView()
        view.buffer = 0
        view.byteOffset = len(self.blob)
        view.byteLength = len(data)
        view.target = target
        self.blob.extend(data)
        self.gltf.bufferViews.append(view)
        return len(self.gltf.bufferViews) - 1

    def _add_accessor(self, items: np.ndarray, component_type: int, target: Optional[int] = None,
                      bounds: bool = False) -> int:
        """Store a (count, size) array; `bounds` adds the min/max glTF requires on positions and times."""
        items = np.ascontiguousarray(items, dtype=ACCESSOR_DTYPES[component_type])
        if items.ndim == 1:
            items = items.reshape(-1, 1)

        accessor = Accessor()
        accessor.bufferView = self._add_buffer_view(items.tobytes(), target)
        accessor.byteOffset = 0
        accessor.componentType = component_type
        accessor.count = len(items)
        accessor.type = ACCESSOR_TYPES[items.shape[1]]
        if bounds and len(items):
            accessor.min = items.min(axis=0).astype(float).tolist()
            accessor.max = items.max(axis=0).astype(float).tolist()
        self.gltf.accessors.append(accessor)
        return len(self.gltf.accessors) - 1

    # -- materials --------------------------------------------------------

    def _add_texture(self, image: Image.Image) -> int:
        key = id(image)
        if key not in self._textures:
            png = io.BytesIO()
            image.save(png, format='PNG')

            gltf_image = GltfImage()
            gltf_image.mimeType = 'image/png'
            gltf_image.bufferView = self._add_buffer_view(png.getvalue())
            self.gltf.images.append(gltf_image)

            if self._sampler is None:
                sampler = Sampler()
                sampler.magFilter = LINEAR
                sampler.minFilter = LINEAR_MIPMAP_LINEAR
                sampler.wrapS = REPEAT
                sampler.wrapT = REPEAT
                self.gltf.samplers.append(sampler)
                self._sampler = len(self.gltf.samplers) - 1

            texture = Texture()
            texture.source = len(self.gltf.images) - 1
            texture.sampler = self._sampler
            self.gltf.textures.append(texture)
            self._textures[key] = len(self.gltf.textures) - 1
        return self._textures[key]

    def _add_material(self, material: Material) -> int:
        key = id(material)
        if key in self._materials:
            return self._materials[key]

        pbr = PbrMetallicRoughness()
        pbr.baseColorFactor = [float(c) for c in material.color]
        pbr.metallicFactor = float(material.metalness)
        pbr.roughnessFactor = float(material.roughness)
        if material.map is not None:
            pbr.baseColorTexture = TextureInfo(index=self._add_texture(material.map))

        # glTF packs roughness (G) and metalness (B) into one texture
        metallic_roughness = material.roughness_map or material.metalness_map
        if material.roughness_map is not None and material.metalness_map is not None \
                and material.roughness_map is not material.metalness_map:
            print(f"WARNING: material '{material.name}' has separate roughness and metalness maps, "
                  f"exporting the roughness map only")
        if metallic_roughness is not None:
            pbr.metallicRoughnessTexture = TextureInfo(index=self._add_texture(metallic_roughness))

        gltf_material = GltfMaterial()
        gltf_material.name = material.name
        gltf_material.pbrMetallicRoughness = pbr
        gltf_material.alphaMode = BLEND if material.transparent else OPAQUE
        if material.normal_map is not None:
            gltf_material.normalTexture = NormalMaterialTexture(index=self._add_texture(material.normal_map))
        if material.ao_map is not None:
            gltf_material.occlusionTexture = OcclusionTextureInfo(index=self._add_texture(material.ao_map))

        self.gltf.materials.append(gltf_material)
        self._materials[key] = len(self.gltf.materials) - 1
        return self._materials[key]

    # -- meshes and skins -------------------------------------------------

    def _add_mesh(self, mesh: MeshNode) -> int:
        geometry = mesh.geometry
        if ATTR_POSITION not in geometry.attributes:
            raise ExportError(f"Mesh '{mesh.name}' has no positions")

        attributes = Attributes()
        for semantic, name in GLTF_ATTRIBUTES.items():
            attribute = geometry.attributes.get(name)
            if attribute is None or (name in SKIN_ATTRIBUTES and not mesh.is_skinned):
                continue
            if name == ATTR_SKIN_INDEX:
                if attribute.array.size and attribute.array.max() > 65535:
                    raise ExportError(f"Mesh '{mesh.name}' references joint {attribute.array.max()}")
                component_type = UNSIGNED_SHORT
            else:
                component_type = FLOAT
            setattr(attributes, semantic, self._add_accessor(
                attribute.items(), component_type, ARRAY_BUFFER, bounds=name == ATTR_POSITION
            ))

        primitive = Primitive()
        primitive.attributes = attributes
        primitive.mode = TRIANGLES
        if geometry.index is not None:
            primitive.indices = self._add_accessor(geometry.index, UNSIGNED_INT, ELEMENT_ARRAY_BUFFER)
        if mesh.material is not None:
            primitive.material = self._add_material(mesh.material)

        gltf_mesh = GltfMesh()
        gltf_mesh.name = mesh.name
        gltf_mesh.primitives = [primitive]

        slot_count = geometry.morph_slot_count
        if slot_count:
            targets = []
            for slot in range(slot_count):
                target = Attributes()
                for semantic, name in GLTF_MORPH_ATTRIBUTES.items():
                    buffers = geometry.morph_attributes.get(name) or []
                    if slot >= len(buffers):
                        continue
                    delta = buffers[slot].items().astype(np.float32)
                    if not geometry.morph_targets_relative and name in geometry.attributes:
                        delta = delta - geometry.attributes[name].items()
                    setattr(target, semantic, self._add_accessor(
                        delta, FLOAT, ARRAY_BUFFER, bounds=name == ATTR_POSITION
                    ))
                targets.append(target)
            primitive.targets = targets

            names = [''] * slot_count
            for name, slot in (mesh.morph_target_dictionary or {}).items():
                if slot < slot_count:
                    names[slot] = name
            influences = list(mesh.morph_target_influences or [])
            gltf_mesh.weights = [float(influences[i]) if i < len(influences) else 0.0 for i in range(slot_count)]
            gltf_mesh.extras = {'targetNames': names}

        self.gltf.meshes.append(gltf_mesh)
        return len(self.gltf.meshes) - 1

    def _add_skin(self, mesh: MeshNode) -> int:
        skeleton: Skeleton = mesh.skeleton
        if skeleton is None:
            raise ExportError(f"Skinned mesh '{mesh.name}' is not bound to a skeleton")
        key = id(skeleton)
        if key in self._skins:
            return self._skins[key]

        joints = []
        for bone in skeleton.bones:
            if bone not in self.node_indices:
                raise ExportError(
                    f"Bone '{self.graph.node(bone).name}' of '{mesh.name}' is not part of the exported tree"
                )
            joints.append(self.node_indices[bone])
        if len(skeleton.bone_inverses) != len(skeleton.bones):
            skeleton.calculate_inverses(self.graph)

        # Column-major, as glTF stores matrices
        inverse_bind_matrices = np.stack([inverse.T.reshape(16) for inverse in skeleton.bone_inverses])

        skin = Skin()
        skin.joints = joints
        skin.skeleton = joints[0]
        skin.inverseBindMatrices = self._add_accessor(inverse_bind_matrices, FLOAT)
        self.gltf.skins.append(skin)
        self._skins[key] = len(self.gltf.skins) - 1
        return self._skins[key]

    # -- animations -------------------------------------------------------

    def _add_animation(self, clip: AnimationClip) -> None:
        animation = Animation()
        animation.name = clip.name
        for track in clip.tracks:
            node_index = self.node_names.get(track.node_name)
            if node_index is None:
                print(f"WARNING: clip '{clip.name}' track targets unknown node '{track.node_name}', skipping")
                continue
            times = np.asarray(track.times, dtype=np.float32)
            # Morph weight outputs are scalars, one per target per keyframe
            item_size = TRACK_ITEM_SIZES.get(track.path, 1)
            values = np.asarray(track.values, dtype=np.float32).reshape(-1, item_size)

            sampler = AnimationSampler()
            sampler.input = self._add_accessor(times, FLOAT, bounds=True)
            sampler.output = self._add_accessor(values, FLOAT)
            sampler.interpolation = track.interpolation
            animation.samplers.append(sampler)

            channel = AnimationChannel()
            channel.sampler = len(animation.samplers) - 1
            channel.target = AnimationChannelTarget(node=node_index, path=track.path)
            animation.channels.append(channel)

        if not animation.channels:
            print(f"WARNING: clip '{clip.name}' has no exportable tracks, skipping")
            return
        self.gltf.animations.append(animation)

    # -- document ---------------------------------------------------------

    def build(self, root: int, clips: List[AnimationClip]) -> GLTF2:
        graph = self.graph
        handles = list(graph.traverse(root))[1:]
        for handle in handles:
            self.node_indices[handle] = len(self.node_indices)
            self.node_names.setdefault(graph.node(handle).name, self.node_indices[handle])

        extensions_used = set()
        for handle in handles:
            node = graph.node(handle)
            gltf_node = GltfNode()
            gltf_node.name = node.name
            if not np.allclose(node.translation, 0.0):
                gltf_node.translation = [float(v) for v in node.translation]
            if not np.allclose(node.rotation, [0.0, 0.0, 0.0, 1.0]):
                gltf_node.rotation = [float(v) for v in node.rotation]
            if not np.allclose(node.scale, 1.0):
                gltf_node.scale = [float(v) for v in node.scale]
            if node.children:
                gltf_node.children = [self.node_indices[child] for child in node.children]

            extensions = components_to_extensions(node.components)
            if extensions:
                gltf_node.extensions = extensions
                extensions_used.add(HUBS_COMPONENTS_EXTENSION)
            self.gltf.nodes.append(gltf_node)

        for handle in handles:
            node = graph.node(handle)
            if not isinstance(node, MeshNode):
                continue
            gltf_node = self.gltf.nodes[self.node_indices[handle]]
            gltf_node.mesh = self._add_mesh(node)
            if node.is_skinned:
                gltf_node.skin = self._add_skin(node)

        for clip in clips:
            self._add_animation(clip)

        scene = Scene()
        scene.name = graph.node(root).name
        scene.nodes = [self.node_indices[child] for child in graph.node(root).children]
        self.gltf.scenes.append(scene)
        self.gltf.scene = 0
        self.gltf.extensionsUsed = sorted(extensions_used)

        if self.blob:
            buffer = Buffer()
            buffer.byteLength = len(self.blob)
            self.gltf.buffers.append(buffer)
            self.gltf.set_binary_blob(bytes(self.blob))
        return self.gltf


def export_gltf(graph: SceneGraph, root: int, binary: bool = True,
                animations: Optional[List[AnimationClip]] = None) -> bytes:
    """Serialize the subtree under `root` as GLB bytes, or as glTF JSON with embedded buffers."""
    clips = add_non_duplicate_animation_clips(list(graph.node(root).animations), animations or [])
    gltf = GltfBuilder(graph).build(root, clips)

    try:
        if binary:
            data = b"".join(gltf.save_to_bytes())
        else:
            if gltf.buffers:
                gltf.convert_buffers(BufferFormat.DATAURI)
            data = gltf.to_json().encode('utf-8')
    except Exception as e:
        raise ExportError(f"pygltflib failed to serialize the avatar: {e}") from e

    print(f"Exported {len(gltf.nodes)} nodes, {len(gltf.meshes)} meshes, {len(gltf.skins)} skins, "
          f"{len(gltf.animations)} animations ({len(data):,} bytes)")
    return data
