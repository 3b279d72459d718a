#!/usr/bin/env python3
"""
Test writing avatars with the glTF exporter and reading them back with the loader
"""

import sys

import numpy as np
import pytest
from PIL import Image

from analyze_glb import analyze_glb
from avatar_components import LoopAnimation, MorphAudioFeedback, OpaqueComponent
from avatar_constants import ATTR_POSITION, ATTR_SKIN_INDEX, ATTR_UV, AVATAR_ROOT_NAME, SCENE_NAME, TYPE_BONE, TYPE_SKINNED_MESH
from avatar_errors import ExportError, LoadError, PreconditionError
from avatar_gltf_exporter import export_gltf
from avatar_loader import load_animation_clip, load_scene
from avatar_mesh_merging import merge_geometry
from avatar_scene import AnimationClip, KeyframeTrack, MeshNode, Node
from avatar_tree_search import find_child_by_name, find_children_by_type
from conftest import BONE_NAMES, TRIANGLE


def _write(tmp_path, graph, root, name='avatar.glb', **kwargs):
    path = tmp_path / name
    path.write_bytes(export_gltf(graph, root, **kwargs))
    return str(path)


@pytest.fixture
def part(graph, part_factory):
    texture = Image.new('RGBA', (4, 4), (10, 200, 30, 255))
    return part_factory(graph, [
        dict(name='body', morphs=[('MouthFlap', [0.0, 0.1, 0.0], 0.0), ('Smile', [0.1, 0.0, 0.0], 0.5)],
             texture=texture),
        dict(name='glasses', transparent=True, offset=(0.0, 2.0, 0.0)),
    ], clips=['idle_eyes'], components={
        LoopAnimation.key: LoopAnimation(clip='idle_eyes'),
        'scale-audio-feedback': OpaqueComponent('scale-audio-feedback', {'minScale': 1.0}),
    })


def test_skeleton_and_morphs_survive_a_round_trip(tmp_path, graph, part):
    loaded, root = load_scene(_write(tmp_path, graph, part))

    assert loaded.node(root).name == SCENE_NAME
    meshes = find_children_by_type(loaded, root, TYPE_SKINNED_MESH)
    assert [mesh.name for mesh in meshes] == ['body', 'glasses']

    body = meshes[0]
    assert [loaded.node(bone).name for bone in body.skeleton.bones] == list(BONE_NAMES)
    assert all(loaded.node(bone).type == TYPE_BONE for bone in body.skeleton.bones)
    assert meshes[1].skeleton is body.skeleton
    original = find_child_by_name(graph, part, 'body').skeleton
    for expected, actual in zip(original.bone_inverses, body.skeleton.bone_inverses):
        np.testing.assert_allclose(actual, expected, atol=1e-6)

    assert body.morph_target_dictionary == {'MouthFlap': 0, 'Smile': 1}
    assert body.morph_target_influences == [0.0, 0.5]
    np.testing.assert_allclose(body.geometry.morph_attributes[ATTR_POSITION][1].items(), [[0.1, 0.0, 0.0]] * 3,
                               atol=1e-6)
    np.testing.assert_allclose(body.geometry.attributes[ATTR_POSITION].items(), TRIANGLE)
    np.testing.assert_allclose(body.geometry.attributes[ATTR_UV].items(), [[0, 0], [1, 0], [0, 1]])
    assert body.geometry.attributes[ATTR_SKIN_INDEX].array.dtype == np.uint16
    assert body.geometry.index.tolist() == [0, 1, 2]


def test_unnamed_morph_targets_stay_apart_when_merged(tmp_path, graph, part_factory):
    scene = part_factory(graph, [
        dict(name='body', morphs=[('Smile', [0.1, 0.0, 0.0], 0.0)]),
        dict(name='hair', morphs=[('Sway', [0.0, 0.1, 0.0], 0.0)]),
    ])
    for mesh in find_children_by_type(graph, scene, TYPE_SKINNED_MESH):
        mesh.morph_target_dictionary = {}

    loaded, root = load_scene(_write(tmp_path, graph, scene))
    body, hair = find_children_by_type(loaded, root, TYPE_SKINNED_MESH)

    assert body.morph_target_dictionary == {}
    assert hair.morph_target_influences == [0.0]
    assert merge_geometry([body, hair]).morph_target_dictionary == {'body.0': 0, 'hair.0': 1}


def test_materials_components_and_clips_survive_a_round_trip(tmp_path, graph, part):
    loaded, root = load_scene(_write(tmp_path, graph, part))

    body = find_child_by_name(loaded, root, 'body')
    glasses = find_child_by_name(loaded, root, 'glasses')
    assert not body.material.transparent
    assert glasses.material.transparent
    assert body.material.map.convert('RGBA').getpixel((0, 0)) == (10, 200, 30, 255)

    avatar_root = find_child_by_name(loaded, root, AVATAR_ROOT_NAME)
    assert avatar_root.components[LoopAnimation.key].clip == 'idle_eyes'
    assert avatar_root.components['scale-audio-feedback'].payload == {'minScale': 1.0}

    clips = loaded.node(root).animations
    assert [clip.name for clip in clips] == ['idle_eyes']
    track = clips[0].tracks[0]
    assert (track.node_name, track.path) == ('Hips', 'rotation')
    np.testing.assert_allclose(track.times, [0.0, 1.0])
    assert len(track.values) == 8


def test_gltf_json_output_embeds_buffers(tmp_path, graph, part):
    path = _write(tmp_path, graph, part, name='avatar.gltf', binary=False)
    with open(path, 'rb') as f:
        assert f.read(1) == b'{'

    loaded, root = load_scene(path)
    assert len(find_children_by_type(loaded, root, TYPE_SKINNED_MESH)) == 2


def test_extra_clips_are_exported_after_the_root_clips(tmp_path, graph, part):
    extra = AnimationClip('Wave', [KeyframeTrack('Head', 'translation', np.array([0.0, 0.5]), np.zeros(6))])
    loaded, root = load_scene(_write(tmp_path, graph, part, animations=[extra]))
    assert [clip.name for clip in loaded.node(root).animations] == ['idle_eyes', 'Wave']


def test_tracks_for_unknown_nodes_are_skipped(tmp_path, graph, part, capsys):
    ghost = AnimationClip('Ghost', [KeyframeTrack('Nobody', 'translation', np.array([0.0]), np.zeros(3))])
    loaded, root = load_scene(_write(tmp_path, graph, part, animations=[ghost]))

    assert 'WARNING' in capsys.readouterr().out
    assert [clip.name for clip in loaded.node(root).animations] == ['idle_eyes']


def test_unbound_skinned_mesh_cannot_be_exported(graph, part):
    find_child_by_name(graph, part, 'body').skeleton = None
    with pytest.raises(ExportError):
        export_gltf(graph, part)


def test_bones_outside_the_exported_tree_are_rejected(graph, part):
    body = find_child_by_name(graph, part, 'body')
    holder = graph.add_node(Node(name='Holder'))
    graph.add(holder, body.handle)
    with pytest.raises(ExportError):
        export_gltf(graph, holder)


def test_load_animation_clip_renames_the_first_clip(tmp_path, graph, part):
    clip = load_animation_clip(_write(tmp_path, graph, part), 'Dance')
    assert clip.name == 'Dance'
    assert clip.duration == pytest.approx(1.0)


def test_load_animation_clip_without_clips(tmp_path, graph, part_factory):
    static = part_factory(graph, [dict(name='body')])
    with pytest.raises(PreconditionError):
        load_animation_clip(_write(tmp_path, graph, static), 'Dance')


def test_loader_errors(tmp_path):
    with pytest.raises(LoadError):
        load_scene(str(tmp_path / 'missing.glb'))

    broken = tmp_path / 'broken.gltf'
    broken.write_text('{ this is not json')
    with pytest.raises(LoadError):
        load_scene(str(broken))


def test_static_meshes_load_through_trimesh(tmp_path):
    obj = tmp_path / 'hat.obj'
    obj.write_text("v 0 0 0\nv 1 0 0\nv 0 1 0\nf 1 2 3\n")

    loaded, root = load_scene(str(obj))

    assert loaded.node(root).name == 'hat'
    mesh = loaded.node(loaded.node(root).children[0])
    assert isinstance(mesh, MeshNode)
    assert mesh.geometry.vertex_count == 3
    assert mesh.skeleton is None


def test_analyze_glb_summarizes_an_export(tmp_path, graph, part):
    combined = find_child_by_name(graph, part, 'body')
    combined.components[MorphAudioFeedback.key] = MorphAudioFeedback(name='MouthFlap')
    summary = analyze_glb(_write(tmp_path, graph, part))

    assert [mesh['name'] for mesh in summary['meshes']] == ['body', 'glasses']
    assert summary['meshes'][0]['morph_targets'] == ['MouthFlap', 'Smile']
    assert summary['skins'][0]['joints'] == list(BONE_NAMES)
    assert summary['animations'] == ['idle_eyes']
    assert summary['components']['body'] == [MorphAudioFeedback.key]
    assert summary['components'][AVATAR_ROOT_NAME] == sorted([LoopAnimation.key, 'scale-audio-feedback'])


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
