"""
Avatar Armature
Skeleton cloning and rigid bone binding.
"""

import numpy as np

from avatar_constants import ATTR_NORMAL, ATTR_POSITION, ATTR_SKIN_INDEX, ATTR_SKIN_WEIGHT, TYPE_BONE, TYPE_SKINNED_MESH
from avatar_errors import PreconditionError
from avatar_scene import BufferAttribute, MeshNode, SceneGraph, Skeleton


def clone_skeleton(graph: SceneGraph, skinned_mesh: MeshNode) -> Skeleton:
    """Copy the mesh's bone hierarchy into fresh nodes of the same arena.

    The clone has the same bone order, topology and bind-pose transforms as
    the source and shares no nodes with it. Assumes bones[0] is the root bone.
    """
    skeleton = skinned_mesh.skeleton
    if skeleton is None or not skeleton.bones:
        raise PreconditionError(f"Mesh '{skinned_mesh.name}' is not bound to a skeleton")

    root = skeleton.bones[0]
    reachable = set(graph.traverse(root))
    stray = [graph.node(bone).name for bone in skeleton.bones if bone not in reachable]
    if stray:
        raise PreconditionError(
            f"bones[0] '{graph.node(root).name}' is not the root of the skeleton of "
            f"'{skinned_mesh.name}'; unreachable bones: {stray}"
        )

    skeleton.pose(graph)

    bone_clones = {}
    for bone in skeleton.bones:
        bone_clones[bone] = graph.clone_node(bone)

    # Rebuild the original parent/child structure between the clones
    for handle in graph.traverse(root):
        if graph.node(handle).type != TYPE_BONE or handle not in bone_clones:
            continue
        clone = bone_clones[handle]
        for child in graph.node(handle).children:
            if child in bone_clones:
                graph.add(clone, bone_clones[child])

    return Skeleton(
        [bone_clones[bone] for bone in skeleton.bones],
        [inverse.copy() for inverse in skeleton.bone_inverses],
    )


def attach_rigid_part(graph: SceneGraph, mesh_handle: int, skeleton: Skeleton, bone_name: str) -> MeshNode:
    """Turn a static mesh into a skinned mesh driven entirely by one bone.

    The mesh's vertices are taken to be authored in the bone's local space and
    are moved into bind-pose model space; every vertex gets joint = bone,
    weight = 1.
    """
    mesh = graph.node(mesh_handle)
    if not isinstance(mesh, MeshNode):
        raise PreconditionError(f"Node '{mesh.name}' has no geometry to attach")

    bone_index = next(
        (i for i, bone in enumerate(skeleton.bones) if graph.node(bone).name == bone_name), None
    )
    if bone_index is None:
        raise PreconditionError(f"Bone '{bone_name}' not found in skeleton")
    if len(skeleton.bone_inverses) != len(skeleton.bones):
        skeleton.calculate_inverses(graph)

    transform = np.linalg.inv(skeleton.bone_inverses[bone_index]) @ mesh.matrix()
    geometry = mesh.geometry.clone()

    positions = geometry.attributes[ATTR_POSITION].items().astype(np.float64)
    homogeneous = np.hstack([positions, np.ones((len(positions), 1))])
    moved = (transform @ homogeneous.T).T[:, :3]
    geometry.attributes[ATTR_POSITION] = BufferAttribute(moved.astype(np.float32), 3)

    if ATTR_NORMAL in geometry.attributes:
        normal_matrix = np.linalg.inv(transform[:3, :3]).T
        normals = geometry.attributes[ATTR_NORMAL].items().astype(np.float64) @ normal_matrix.T
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        normals = normals / np.where(lengths == 0, 1.0, lengths)
        geometry.attributes[ATTR_NORMAL] = BufferAttribute(normals.astype(np.float32), 3)

    vertex_count = geometry.vertex_count
    joints = np.zeros((vertex_count, 4), dtype=np.uint16)
    joints[:, 0] = bone_index
    weights = np.zeros((vertex_count, 4), dtype=np.float32)
    weights[:, 0] = 1.0
    geometry.attributes[ATTR_SKIN_INDEX] = BufferAttribute(joints, 4)
    geometry.attributes[ATTR_SKIN_WEIGHT] = BufferAttribute(weights, 4)

    mesh.geometry = geometry
    mesh.set_matrix(np.eye(4))
    mesh.type = TYPE_SKINNED_MESH
    mesh.bind(skeleton)

    print(f"  Skinned mesh '{mesh.name}' to joint {bone_index} ('{bone_name}') with {vertex_count} vertices")
    return mesh
