#!/usr/bin/env python3
"""Analyze an exported avatar glb/gltf file to see what we got."""
import os
import sys
from typing import Any, Dict

import pygltflib

from avatar_constants import COMBINED_MESH_NAME, HUBS_COMPONENTS_EXTENSION
from avatar_errors import LoadError


def analyze_glb(filename: str) -> Dict[str, Any]:
    """Print and return a summary of the meshes, skins, morphs, clips and components inside a file."""
    if not os.path.exists(filename):
        raise LoadError(f"File not found: {filename}")

    try:
        gltf = pygltflib.GLTF2.load(filename)
    except Exception as e:
        raise LoadError(f"Could not parse {filename}: {e}") from e
    if gltf is None:
        raise LoadError(f"Could not parse {filename}")

    file_size = os.path.getsize(filename)
    print(f"📁 File: {filename} ({file_size:,} bytes)")

    nodes = gltf.nodes or []
    summary: Dict[str, Any] = {
        'nodes': len(nodes),
        'meshes': [],
        'skins': [],
        'animations': [animation.name for animation in gltf.animations or []],
        'components': {},
        'materials': len(gltf.materials or []),
        'textures': len(gltf.textures or []),
    }

    print(f"\n📊 glTF Contents Analysis:")
    print(f"   🎭 Nodes: {len(nodes)}")

    # Meshes and their morph targets
    for mesh in gltf.meshes or []:
        target_names = (mesh.extras or {}).get('targetNames') or []
        summary['meshes'].append({
            'name': mesh.name,
            'primitives': len(mesh.primitives),
            'morph_targets': list(target_names),
        })
    print(f"   📦 Meshes: {len(summary['meshes'])}")
    for mesh in summary['meshes']:
        print(f"      {mesh['name']}: {mesh['primitives']} primitives, {len(mesh['morph_targets'])} morph targets")

    # Skins (armatures)
    for skin in gltf.skins or []:
        joint_names = [nodes[j].name or f'Joint_{j}' for j in skin.joints if j < len(nodes)]
        summary['skins'].append({
            'joints': joint_names,
            'has_inverse_bind_matrices': skin.inverseBindMatrices is not None,
        })
    print(f"   🦴 Skins (armatures): {len(summary['skins'])}")
    if summary['skins']:
        skin = summary['skins'][0]
        print(f"      Joints in first skin: {len(skin['joints'])}")
        if len(skin['joints']) <= 20:
            print(f"      Joint names: {', '.join(skin['joints'])}")

    # Hubs components per node
    for i, node in enumerate(nodes):
        hubs = (node.extensions or {}).get(HUBS_COMPONENTS_EXTENSION)
        if hubs:
            summary['components'][node.name or f'node_{i}'] = sorted(hubs)
    print(f"   🧩 Nodes with components: {len(summary['components'])}")
    for name, keys in summary['components'].items():
        print(f"      {name}: {', '.join(keys)}")

    print(f"   🎨 Materials: {summary['materials']}")
    print(f"   🖼️  Textures: {summary['textures']}")
    print(f"   🎬 Animations: {len(summary['animations'])} {summary['animations']}")

    combined = any(mesh['name'] == COMBINED_MESH_NAME for mesh in summary['meshes'])
    skinned = bool(summary['skins']) and all(s['has_inverse_bind_matrices'] for s in summary['skins'])
    print(f"\n🎯 SUMMARY:")
    print(f"   🦴 Armature: {'✅ WORKING' if skinned else '❌ BROKEN'}")
    print(f"   📦 Combined mesh: {'✅ PRESENT' if combined else '⚠️  NOT COMBINED'}")
    return summary


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: analyze_glb.py <file.glb>")
        sys.exit(1)
    try:
        analyze_glb(sys.argv[1])
    except LoadError as e:
        print(f"❌ {e}")
        sys.exit(1)
