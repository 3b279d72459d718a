"""
Avatar UV Remapping
Move a mesh's texture coordinates into its texture atlas cell.
"""

import numpy as np

from avatar_constants import ATTR_UV, ATTR_UV2
from avatar_scene import AtlasPlacement, MeshNode


def lerp(t, min_value, max_value, new_min, new_max):
    progress = (t - min_value) / (max_value - min_value)
    return new_min + progress * (new_max - new_min)


def remap_uvs(mesh: MeshNode, placement: AtlasPlacement) -> None:
    """Rescale uv and uv2 from the unit square into the placement rectangle.

    Works on a copy of the geometry: the mesh is repointed at the copy so
    other readers of the original buffers are unaffected.
    """
    geometry = mesh.geometry.clone()
    mesh.geometry = geometry

    for name in (ATTR_UV, ATTR_UV2):
        attribute = geometry.attributes.get(name)
        if attribute is None:
            continue
        coords = attribute.items().astype(np.float64)
        coords[:, 0] = lerp(coords[:, 0], 0.0, 1.0, placement.min[0], placement.max[0])
        coords[:, 1] = lerp(coords[:, 1], 0.0, 1.0, placement.min[1], placement.max[1])
        attribute.array = coords.reshape(-1).astype(attribute.array.dtype)
