"""
Avatar Scene Assembly
Fold several independently loaded avatar variants into one scene that shares
a single skeleton, one clip list and one set of AvatarRoot components.
"""

from typing import List

from avatar_armature import clone_skeleton
from avatar_components import combine_hubs_components
from avatar_constants import AVATAR_ROOT_NAME, SCENE_NAME, TYPE_GROUP, TYPE_SKINNED_MESH
from avatar_errors import PreconditionError
from avatar_scene import AnimationClip, MeshNode, Node, SceneGraph
from avatar_tree_search import find_child_by_name, find_children_by_type


def add_non_duplicate_animation_clips(clips: List[AnimationClip], new_clips: List[AnimationClip]) -> List[AnimationClip]:
    """Append clips whose name is not taken yet; the first clip seen under a name wins."""
    names = {clip.name for clip in clips}
    for clip in new_clips:
        if clip.name not in names:
            clips.append(clip)
            names.add(clip.name)
    return clips


def _bone_names(graph: SceneGraph, mesh: MeshNode) -> List[str]:
    if mesh.skeleton is None:
        raise PreconditionError(f"Skinned mesh '{mesh.name}' has no skeleton")
    return [graph.node(bone).name for bone in mesh.skeleton.bones]


def clone_into_avatar(graph: SceneGraph, avatar_group: int) -> int:
    """Combine the variants under `avatar_group` into a new detached "Scene" node."""
    variants = list(graph.node(avatar_group).children)
    cloned_scene = Node(name=SCENE_NAME, type=TYPE_GROUP)

    # Combine the root "Scene" nodes
    scenes = [node for node in (find_child_by_name(graph, v, SCENE_NAME) for v in variants) if node is not None]
    if not scenes:
        raise PreconditionError(f'No "{SCENE_NAME}" node found in any avatar part')
    for scene in scenes:
        add_non_duplicate_animation_clips(cloned_scene.animations, scene.animations)

    # Combine the "AvatarRoot" nodes
    avatar_roots = [
        node for node in (find_child_by_name(graph, v, AVATAR_ROOT_NAME) for v in variants) if node is not None
    ]
    if not avatar_roots:
        raise PreconditionError(f'No "{AVATAR_ROOT_NAME}" node found in any avatar part')
    cloned_avatar_root = graph.clone_node(avatar_roots[0].handle)
    root_node = graph.node(cloned_avatar_root)
    for avatar_root in avatar_roots:
        root_node.components = combine_hubs_components(root_node.components, dict(avatar_root.components))

    # Clone skinned meshes, bind them to a new skeleton
    skinned_meshes = find_children_by_type(graph, avatar_group, TYPE_SKINNED_MESH)
    if not skinned_meshes:
        raise PreconditionError("No skinned meshes found in any avatar part")
    reference = _bone_names(graph, skinned_meshes[0])
    for mesh in skinned_meshes[1:]:
        if _bone_names(graph, mesh) != reference:
            raise PreconditionError(
                f"Skinned mesh '{mesh.name}' is bound to a skeleton incompatible with '{skinned_meshes[0].name}'"
            )

    cloned_meshes = [graph.clone_node(mesh.handle) for mesh in skinned_meshes]
    skeleton = clone_skeleton(graph, graph.node(cloned_meshes[0]))
    for handle in cloned_meshes:
        graph.node(handle).bind(skeleton)

    scene_handle = graph.add_node(cloned_scene)
    graph.add(scene_handle, cloned_avatar_root)
    graph.add(cloned_avatar_root, skeleton.root_bone)
    for handle in cloned_meshes:
        graph.add(cloned_avatar_root, handle)

    print(f"Assembled {len(variants)} parts: {len(cloned_meshes)} skinned meshes, "
          f"{len(cloned_scene.animations)} clips, components {sorted(root_node.components)}")
    return scene_handle
