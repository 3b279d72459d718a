#!/usr/bin/env python3
"""
Avatar Texture Atlas
Pack the textures of the meshes to merge into one diffuse, one normal and one
occlusion/roughness/metalness image, one square grid cell per mesh.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from PIL import Image

from avatar_constants import ATLAS_SIZE, FLAT_NORMAL_COLOR
from avatar_errors import PreconditionError
from avatar_scene import AtlasPlacement, Material, MeshNode

RESAMPLE = Image.Resampling.LANCZOS


@dataclass
class TextureAtlas:
    textures: Dict[str, Image.Image] = field(default_factory=dict)
    # mesh handle -> cell in normalized UV space
    placements: Dict[int, AtlasPlacement] = field(default_factory=dict)


def _to_byte(value: float) -> int:
    return int(round(max(0.0, min(1.0, float(value))) * 255))


def _diffuse_tile(material: Material, size: int) -> Image.Image:
    """Base color texture with the color factor baked in, or a solid swatch."""
    color = np.asarray(material.color, dtype=float)
    if material.map is None:
        return Image.new('RGBA', (size, size), tuple(_to_byte(c) for c in color))

    data = np.asarray(material.map.convert('RGBA').resize((size, size), RESAMPLE), dtype=float)
    data = data * color
    return Image.fromarray(np.clip(data, 0, 255).astype(np.uint8), 'RGBA')


def _normal_tile(material: Material, size: int) -> Image.Image:
    if material.normal_map is None:
        return Image.new('RGBA', (size, size), FLAT_NORMAL_COLOR)
    return material.normal_map.convert('RGBA').resize((size, size), RESAMPLE)


def _channel(image: Optional[Image.Image], index: int, size: int, factor: float) -> np.ndarray:
    if image is None:
        return np.full((size, size), factor * 255.0)
    data = np.asarray(image.convert('RGB').resize((size, size), RESAMPLE), dtype=float)
    return data[:, :, index] * factor


def _orm_tile(material: Material, size: int) -> Image.Image:
    """glTF channel layout: R occlusion, G roughness, B metalness."""
    orm = np.stack([
        _channel(material.ao_map, 0, size, 1.0),
        _channel(material.roughness_map, 1, size, material.roughness),
        _channel(material.metalness_map, 2, size, material.metalness),
    ], axis=-1)
    return Image.fromarray(np.clip(orm, 0, 255).astype(np.uint8), 'RGB')


def create_texture_atlas(meshes: List[MeshNode], size: int = ATLAS_SIZE) -> TextureAtlas:
    """Pack every mesh's material into one grid cell of three atlas images."""
    if not meshes:
        raise PreconditionError("No meshes to pack into a texture atlas")

    grid = math.ceil(math.sqrt(len(meshes)))
    tile = size // grid
    if tile < 1:
        raise PreconditionError(f"Atlas size {size} too small for {len(meshes)} meshes")

    diffuse = Image.new('RGBA', (size, size), (0, 0, 0, 0))
    normal = Image.new('RGBA', (size, size), FLAT_NORMAL_COLOR)
    orm = Image.new('RGB', (size, size), (255, 255, 0))

    atlas = TextureAtlas(textures={'diffuse': diffuse, 'normal': normal, 'orm': orm})
    for i, mesh in enumerate(meshes):
        column, row = i % grid, i // grid
        x, y = column * tile, row * tile
        diffuse.paste(_diffuse_tile(mesh.material, tile), (x, y))
        normal.paste(_normal_tile(mesh.material, tile), (x, y))
        orm.paste(_orm_tile(mesh.material, tile), (x, y))
        # glTF UV space has its origin at the top-left corner of the image
        atlas.placements[mesh.handle] = AtlasPlacement(
            min=(x / size, y / size),
            max=((x + tile) / size, (y + tile) / size),
        )

    print(f"Packed {len(meshes)} meshes into a {size}x{size} atlas ({grid}x{grid} grid, {tile}px cells)")
    return atlas
