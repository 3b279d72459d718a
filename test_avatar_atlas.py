#!/usr/bin/env python3
"""
Test texture atlas packing
"""

import sys

import pytest
from PIL import Image

from avatar_atlas import create_texture_atlas
from avatar_constants import FLAT_NORMAL_COLOR
from avatar_errors import PreconditionError


def test_four_meshes_fill_a_two_by_two_grid(graph, mesh_factory):
    meshes = [mesh_factory(graph, f"m{i}") for i in range(4)]

    atlas = create_texture_atlas(meshes, size=64)

    assert set(atlas.textures) == {'diffuse', 'normal', 'orm'}
    assert all(image.size == (64, 64) for image in atlas.textures.values())
    placements = [atlas.placements[mesh.handle] for mesh in meshes]
    assert placements[0].min == (0.0, 0.0) and placements[0].max == (0.5, 0.5)
    assert placements[1].min == (0.5, 0.0) and placements[1].max == (1.0, 0.5)
    assert placements[2].min == (0.0, 0.5) and placements[2].max == (0.5, 1.0)
    assert placements[3].min == (0.5, 0.5) and placements[3].max == (1.0, 1.0)


def test_single_mesh_covers_the_whole_atlas(graph, mesh_factory):
    mesh = mesh_factory(graph, 'solo')
    atlas = create_texture_atlas([mesh], size=16)
    assert atlas.placements[mesh.handle].min == (0.0, 0.0)
    assert atlas.placements[mesh.handle].max == (1.0, 1.0)


def test_untextured_materials_become_swatches(graph, mesh_factory):
    red = mesh_factory(graph, 'red', color=(1.0, 0.0, 0.0, 1.0), roughness=0.5)
    blue = mesh_factory(graph, 'blue', color=(0.0, 0.0, 1.0, 1.0))

    atlas = create_texture_atlas([red, blue], size=64)

    diffuse = atlas.textures['diffuse']
    assert diffuse.getpixel((16, 16)) == (255, 0, 0, 255)
    assert diffuse.getpixel((48, 16)) == (0, 0, 255, 255)
    assert atlas.textures['normal'].getpixel((16, 16)) == FLAT_NORMAL_COLOR
    occlusion, roughness, metalness = atlas.textures['orm'].getpixel((16, 16))
    assert occlusion == 255
    assert roughness in (127, 128)
    assert metalness == 0


def test_textures_are_tinted_by_the_color_factor(graph, mesh_factory):
    texture = Image.new('RGBA', (8, 8), (0, 0, 255, 255))
    mesh = mesh_factory(graph, 'tinted', texture=texture, color=(1.0, 1.0, 0.5, 1.0))

    atlas = create_texture_atlas([mesh], size=32)

    red, green, blue, alpha = atlas.textures['diffuse'].getpixel((10, 10))
    assert red <= 1 and green <= 1 and alpha >= 254
    assert 125 <= blue <= 128


def test_empty_atlas_is_rejected():
    with pytest.raises(PreconditionError):
        create_texture_atlas([])


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
