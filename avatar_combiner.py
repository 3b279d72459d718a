"""
Avatar Mesh Combiner
Collapse every mergeable skinned mesh of an avatar into one atlas-textured
skinned mesh, keeping transparent and UV-scrolling parts as separate clones,
all bound to one freshly cloned skeleton.
"""

from typing import Callable, Dict, List, Optional, Set

from avatar_armature import clone_skeleton
from avatar_atlas import TextureAtlas, create_texture_atlas
from avatar_components import LoopAnimation, MorphAudioFeedback, UVScroll
from avatar_constants import (
    ATTR_UV,
    ATTR_UV2,
    AVATAR_ROOT_NAME,
    COMBINED_MATERIAL_NAME,
    COMBINED_MESH_NAME,
    DEFAULT_IDLE_CLIP,
    MAX_LIVE_MORPH_SLOTS,
    TYPE_SKINNED_MESH,
    VISEME_MORPH_NAME,
)
from avatar_errors import PreconditionError
from avatar_mesh_merging import merge_geometry, morph_slot_names, remap_weight_tracks
from avatar_morphs import bake_morphs, remove_baked_morphs
from avatar_scene import Geometry, Material, MeshNode, Node, SceneGraph
from avatar_scene_assembly import add_non_duplicate_animation_clips
from avatar_tree_search import find_child_by_name, find_children_by_type, has_hubs_component
from avatar_uv import remap_uvs


def is_excluded_from_merge(graph: SceneGraph, mesh: MeshNode) -> bool:
    return mesh.material.transparent or has_hubs_component(graph, mesh, UVScroll.key)


def strip_live_morph_channels(geometry: Geometry) -> None:
    """Drop per-slot morph channels a renderer may have copied into the base attributes.

    The morph data itself stays in `geometry.morph_attributes`.
    """
    for i in range(MAX_LIVE_MORPH_SLOTS):
        geometry.attributes.pop(f"morphTarget{i}", None)
        geometry.attributes.pop(f"morphNormal{i}", None)


def create_combined_material(atlas: TextureAtlas) -> Material:
    textures = atlas.textures
    material = Material(
        name=COMBINED_MATERIAL_NAME,
        map=textures['diffuse'],
        normal_map=textures['normal'],
        ao_map=textures['orm'],
        roughness_map=textures['orm'],
        metalness_map=textures['orm'],
    )
    material.metalness = 1.0
    return material


def _check_shared_bone_space(graph: SceneGraph, meshes: List[MeshNode]) -> None:
    # Skin indices are only comparable between meshes bound to the same bone list
    reference = None
    for mesh in meshes:
        if mesh.skeleton is None:
            raise PreconditionError(f"Skinned mesh '{mesh.name}' has no skeleton")
        names = [graph.node(bone).name for bone in mesh.skeleton.bones]
        if reference is None:
            reference = names
        elif names != reference:
            raise PreconditionError(f"Skinned mesh '{mesh.name}' uses a different bone list than '{meshes[0].name}'")


def _surviving_slot_names(mesh: MeshNode, authored_slots: int, baked: Set[int]) -> List[Optional[str]]:
    """Merged morph name of each slot the mesh had before baking; None where baked."""
    names = morph_slot_names(mesh)
    result = []
    for slot in range(authored_slots):
        remaining = slot - sum(1 for b in baked if b < slot)
        if slot in baked or remaining >= len(names):
            result.append(None)
        else:
            result.append(names[remaining])
    return result


def combine(graph: SceneGraph, avatar: int,
            atlas_packer: Callable[[List[MeshNode]], TextureAtlas] = create_texture_atlas) -> int:
    """Build a new AvatarRoot holding the merged mesh, the excluded clones and the skeleton.

    Mergeable meshes are modified along the way (their geometry is replaced by
    remapped, baked copies); the returned root handle is detached.
    """
    skinned_meshes = find_children_by_type(graph, avatar, TYPE_SKINNED_MESH)
    meshes_to_exclude = [mesh for mesh in skinned_meshes if is_excluded_from_merge(graph, mesh)]
    meshes = [mesh for mesh in skinned_meshes if mesh not in meshes_to_exclude]
    if not meshes:
        raise PreconditionError("No mergeable skinned meshes found")
    _check_shared_bone_space(graph, skinned_meshes)

    print(f"Combining {len(meshes)} meshes ({len(meshes_to_exclude)} excluded: "
          f"{[mesh.name for mesh in meshes_to_exclude]})")

    atlas = atlas_packer(meshes)
    for mesh in meshes:
        placement = atlas.placements.get(mesh.handle)
        if placement is None:
            raise PreconditionError(f"Atlas packer returned no placement for '{mesh.name}'")
        remap_uvs(mesh, placement)

    slot_names: Dict[str, List[Optional[str]]] = {}
    for mesh in meshes:
        authored_slots = len(morph_slot_names(mesh))
        baked = bake_morphs(mesh)
        if baked:
            print(f"  Baked morph slots {sorted(baked)} into '{mesh.name}'")
        remove_baked_morphs(mesh, baked)
        slot_names.setdefault(mesh.name, _surviving_slot_names(mesh, authored_slots, baked))

    for mesh in meshes:
        geometry = mesh.geometry
        # Merged material samples uv2 for occlusion/roughness/metalness
        if ATTR_UV2 not in geometry.attributes and ATTR_UV in geometry.attributes:
            geometry.attributes[ATTR_UV2] = geometry.attributes[ATTR_UV]
        strip_live_morph_channels(geometry)

    merged = merge_geometry(meshes)

    combined = MeshNode(
        name=COMBINED_MESH_NAME,
        type=TYPE_SKINNED_MESH,
        geometry=merged.geometry,
        material=create_combined_material(atlas),
        morph_target_influences=merged.morph_target_influences,
        morph_target_dictionary=merged.morph_target_dictionary,
    )
    if VISEME_MORPH_NAME in combined.morph_target_dictionary:
        combined.components[MorphAudioFeedback.key] = MorphAudioFeedback(
            name=VISEME_MORPH_NAME, min_value=0.0, max_value=1.0
        )
    combined_handle = graph.add_node(combined)

    # Unmerged meshes keep their own geometry and material
    clones = [graph.clone_node(mesh.handle) for mesh in meshes_to_exclude]

    skeleton = clone_skeleton(graph, meshes[0])
    combined.bind(skeleton)
    for clone in clones:
        graph.node(clone).bind(skeleton)

    group = Node(name=AVATAR_ROOT_NAME)
    clips = add_non_duplicate_animation_clips(list(graph.node(avatar).animations), merged.animations)
    group.animations = remap_weight_tracks(clips, slot_names, merged.morph_target_dictionary)
    source_root = find_child_by_name(graph, avatar, AVATAR_ROOT_NAME)
    if source_root is not None:
        group.components = dict(source_root.components)
    group.components.setdefault(LoopAnimation.key, LoopAnimation(clip=DEFAULT_IDLE_CLIP, paused=False))

    group_handle = graph.add_node(group)
    graph.add(group_handle, combined_handle)
    graph.add(group_handle, skeleton.root_bone)
    for clone in clones:
        graph.add(group_handle, clone)

    print(f"Combined avatar: 1 merged mesh, {len(clones)} excluded meshes, "
          f"{len(skeleton.bones)} bones, {len(group.animations)} clips")
    return group_handle
