#!/usr/bin/env python3
"""
Avatar Exporter
Load avatar body parts, fold them onto one skeleton, optionally collapse them
into a single atlas-textured mesh and write the result as GLB or glTF.

Usage:
    export_avatar.py --recipe avatar.json
    export_avatar.py --part body.glb --part hair.glb --animation Wave=wave.glb --out avatar.glb
"""

import argparse
import json
import os
import sys
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, List, Optional, Tuple

from avatar_armature import attach_rigid_part
from avatar_atlas import create_texture_atlas
from avatar_combiner import combine
from avatar_constants import ATLAS_SIZE, AVATAR_GROUP_NAME, AVATAR_ROOT_NAME, TYPE_GROUP, TYPE_SKINNED_MESH
from avatar_errors import AvatarError, LoadError, PreconditionError
from avatar_gltf_exporter import export_gltf
from avatar_loader import load_animation_clip, load_scene
from avatar_scene import AnimationClip, MeshNode, Node, SceneGraph
from avatar_scene_assembly import add_non_duplicate_animation_clips, clone_into_avatar
from avatar_tree_search import find_child_by_name, find_children_by_type


@dataclass
class AvatarRecipe:
    parts: List[str] = field(default_factory=list)
    # clip name -> animation file
    animations: Dict[str, str] = field(default_factory=dict)
    # (prop file, bone name)
    attachments: List[Tuple[str, str]] = field(default_factory=list)
    output: str = 'avatar.glb'
    combine: bool = True
    binary: bool = True
    atlas_size: int = ATLAS_SIZE
    workers: Optional[int] = None


def load_recipe(path: str) -> AvatarRecipe:
    """Read a JSON recipe; relative paths are resolved against the recipe's directory."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise LoadError(f"Could not read recipe {path}: {e}") from e
    if not isinstance(data, dict) or not data.get('parts'):
        raise LoadError(f"Recipe {path} must list at least one entry under 'parts'")

    base_dir = os.path.dirname(os.path.abspath(path))

    def resolve(p: str) -> str:
        return p if os.path.isabs(p) else os.path.join(base_dir, p)

    recipe = AvatarRecipe(
        parts=[resolve(p) for p in data['parts']],
        animations={name: resolve(p) for name, p in (data.get('animations') or {}).items()},
        output=resolve(data.get('output', 'avatar.glb')),
        combine=bool(data.get('combine', True)),
        binary=bool(data.get('binary', True)),
        atlas_size=int(data.get('atlas_size', ATLAS_SIZE)),
        workers=data.get('workers'),
    )
    for attachment in data.get('attachments') or []:
        try:
            recipe.attachments.append((resolve(attachment['path']), attachment['bone']))
        except (KeyError, TypeError) as e:
            raise LoadError(f"Recipe {path}: attachments need 'path' and 'bone' ({attachment!r})") from e
    return recipe


def _load_all(loader, args_list: List[tuple], max_workers: Optional[int]) -> list:
    """Run loader(*args) for every entry concurrently; results in input order, first failure wins."""
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(loader, *args) for args in args_list]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [future for future in futures if future in done and future.exception() is not None]
        if failed:
            for future in pending:
                future.cancel()
            error = failed[0].exception()
            if isinstance(error, AvatarError):
                raise error
            raise LoadError(str(error)) from error
        return [future.result() for future in futures]


def load_parts(paths: List[str], max_workers: Optional[int] = None) -> Tuple[SceneGraph, int]:
    """Load every body part and gather them, in input order, under one "Avatar" group."""
    if not paths:
        raise PreconditionError("No avatar parts to load")

    print(f"Loading {len(paths)} avatar parts...")
    results = _load_all(load_scene, [(path,) for path in paths], max_workers)

    graph = SceneGraph()
    group = graph.add_node(Node(name=AVATAR_GROUP_NAME, type=TYPE_GROUP))
    for path, (part_graph, part_root) in zip(paths, results):
        graph.add(group, graph.adopt(part_graph, part_root))
        print(f"  {os.path.basename(path)}: {len(part_graph)} nodes")
    return graph, group


def load_animations(graph: SceneGraph, group: int, animations: Dict[str, str],
                    max_workers: Optional[int] = None) -> List[AnimationClip]:
    """Load the first clip of each animation file, rename it and append it to the group's clips."""
    if not animations:
        return []
    print(f"Loading {len(animations)} animations...")
    clips = _load_all(load_animation_clip, [(path, name) for name, path in animations.items()], max_workers)
    graph.node(group).animations.extend(clips)
    for clip in clips:
        print(f"  {clip.name}: {len(clip.tracks)} tracks, {clip.duration:.2f}s")
    return clips


def attach_props(graph: SceneGraph, group: int, attachments: List[Tuple[str, str]]) -> List[MeshNode]:
    """Load static props and bind each of their meshes rigidly to a bone of the avatar skeleton."""
    if not attachments:
        return []

    skinned_meshes = find_children_by_type(graph, group, TYPE_SKINNED_MESH)
    if not skinned_meshes or skinned_meshes[0].skeleton is None:
        raise PreconditionError("Props need a skinned avatar part to attach to")
    skeleton = skinned_meshes[0].skeleton

    print(f"Attaching {len(attachments)} props...")
    attached = []
    for path, bone_name in attachments:
        prop_graph, prop_root = load_scene(path)
        root = graph.adopt(prop_graph, prop_root)
        meshes = [graph.node(h) for h in graph.traverse(root) if isinstance(graph.node(h), MeshNode)]
        if not meshes:
            raise PreconditionError(f"Prop {path} contains no meshes")
        for mesh in meshes:
            attached.append(attach_rigid_part(graph, mesh.handle, skeleton, bone_name))
        graph.add(group, root)
    return attached


def build_avatar(recipe: AvatarRecipe) -> Tuple[SceneGraph, int]:
    """Run the whole pipeline; returns the graph and the handle of the exportable scene root."""
    graph, group = load_parts(recipe.parts, recipe.workers)
    extra_clips = load_animations(graph, group, recipe.animations, recipe.workers)
    attach_props(graph, group, recipe.attachments)

    scene = clone_into_avatar(graph, group)

    if recipe.combine:
        print("Combining meshes...")
        avatar_root = find_child_by_name(graph, scene, AVATAR_ROOT_NAME)
        combined_root = combine(graph, scene, atlas_packer=partial(create_texture_atlas, size=recipe.atlas_size))
        if avatar_root is not None:
            graph.remove(scene, avatar_root.handle)
        graph.add(scene, combined_root)
        graph.node(scene).animations = list(graph.node(combined_root).animations)

    add_non_duplicate_animation_clips(graph.node(scene).animations, extra_clips)
    return graph, scene


def export_avatar(recipe: AvatarRecipe) -> str:
    """Build the avatar and write it to recipe.output."""
    graph, root = build_avatar(recipe)
    data = export_gltf(graph, root, binary=recipe.binary)

    output_dir = os.path.dirname(os.path.abspath(recipe.output))
    os.makedirs(output_dir, exist_ok=True)
    with open(recipe.output, 'wb') as f:
        f.write(data)

    print(f"✅ Exported avatar: {recipe.output} ({len(data):,} bytes, "
          f"{len(graph.node(root).animations)} clips)")
    return recipe.output


def _parse_pair(value: str, separator: str, flag: str) -> Tuple[str, str]:
    left, sep, right = value.rpartition(separator) if separator == ':' else value.partition(separator)
    if not sep or not left or not right:
        raise argparse.ArgumentTypeError(f"{flag} expects a value like {'PATH:BONE' if separator == ':' else 'NAME=PATH'}")
    return left, right


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Avatar part combiner: merge body parts into one Hubs avatar')
    parser.add_argument('--recipe', help='JSON recipe listing parts, animations, attachments and output')
    parser.add_argument('--part', action='append', default=[], help='Body part glb/gltf file (repeatable)')
    parser.add_argument('--animation', action='append', default=[], type=lambda v: _parse_pair(v, '=', '--animation'),
                        help='Extra animation clip as NAME=PATH (repeatable)')
    parser.add_argument('--attach', action='append', default=[], type=lambda v: _parse_pair(v, ':', '--attach'),
                        help='Static prop bound to a bone as PATH:BONE (repeatable)')
    parser.add_argument('--out', default=None, help='Output glb/gltf path')
    parser.add_argument('--gltf', action='store_true', help='Write glTF JSON with embedded buffers instead of GLB')
    parser.add_argument('--no-combine', action='store_true', help='Keep the parts as separate skinned meshes')
    parser.add_argument('--atlas-size', type=int, default=None, help=f'Texture atlas size in pixels (default {ATLAS_SIZE})')
    parser.add_argument('--workers', type=int, default=None, help='Concurrent loader threads')

    args = parser.parse_args(argv)

    try:
        recipe = load_recipe(args.recipe) if args.recipe else AvatarRecipe()
        if args.part:
            recipe.parts = list(args.part)
        if args.animation:
            recipe.animations.update(dict(args.animation))
        if args.attach:
            recipe.attachments.extend(args.attach)
        if args.out:
            recipe.output = args.out
        if args.gltf:
            recipe.binary = False
        if args.no_combine:
            recipe.combine = False
        if args.atlas_size:
            recipe.atlas_size = args.atlas_size
        if args.workers:
            recipe.workers = args.workers
        if not recipe.parts:
            parser.error('give --recipe or at least one --part')

        print("=== Avatar Exporter ===")
        export_avatar(recipe)
    except AvatarError as e:
        print(f"❌ Error: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
