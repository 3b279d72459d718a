"""
Avatar Morph Baking
Fold permanently active morph targets into the base geometry.

A morph that is switched on for this particular avatar (a fixed body shape,
a pose variant) does not need to survive as a live channel in the merged
mesh, so its weighted delta is added to the base attribute and the slot is
dropped.
"""

from typing import Set

from avatar_scene import MeshNode


def add_in(baked_attribute, morph_attribute, weight: float) -> None:
    """baked += weight * morph, component by component."""
    baked_attribute.array[:] = baked_attribute.array + weight * morph_attribute.array


def bake_morphs(mesh: MeshNode) -> Set[int]:
    """Bake every morph slot with a positive influence; returns the baked slot indices.

    Absolute (non-relative) morph targets and meshes without influences are
    left alone and report nothing baked.
    """
    baked_morph_indices: Set[int] = set()
    if not mesh.morph_target_influences:
        return baked_morph_indices
    if not mesh.geometry.morph_targets_relative:
        return baked_morph_indices

    geometry = mesh.geometry
    for property_name, buffers in geometry.morph_attributes.items():
        base = geometry.attributes.get(property_name)
        if base is None:
            continue
        for index, morph_buffer in enumerate(buffers):
            if index >= len(mesh.morph_target_influences):
                continue
            weight = mesh.morph_target_influences[index]
            if weight > 0:
                baked_morph_indices.add(index)
                add_in(base, morph_buffer, weight)

    return baked_morph_indices


def remove_baked_morphs(mesh: MeshNode, baked_morph_indices: Set[int]) -> None:
    """Drop baked slots from the morph buffers, influences and dictionary.

    Slots are removed highest first so pending indices stay valid; the
    dictionary is renumbered to stay dense.
    """
    if not baked_morph_indices:
        return

    geometry = mesh.geometry
    for morph_index in sorted(baked_morph_indices, reverse=True):
        for buffers in geometry.morph_attributes.values():
            if morph_index < len(buffers):
                del buffers[morph_index]
        if mesh.morph_target_influences is not None and morph_index < len(mesh.morph_target_influences):
            del mesh.morph_target_influences[morph_index]

        if mesh.morph_target_dictionary is None:
            continue
        for morph_name, index in list(mesh.morph_target_dictionary.items()):
            if index == morph_index:
                del mesh.morph_target_dictionary[morph_name]
            elif index > morph_index:
                mesh.morph_target_dictionary[morph_name] = index - 1

    geometry.morph_attributes = {name: buffers for name, buffers in geometry.morph_attributes.items() if buffers}
