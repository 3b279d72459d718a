"""
Avatar Mesh Merging
Concatenate the vertex, index and morph buffers of several skinned meshes
into a single geometry.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from avatar_constants import COMBINED_MESH_NAME
from avatar_errors import PreconditionError
from avatar_scene import AnimationClip, BufferAttribute, Geometry, KeyframeTrack, MeshNode


@dataclass
class MergedGeometry:
    geometry: Geometry
    morph_target_influences: List[float] = field(default_factory=list)
    morph_target_dictionary: Dict[str, int] = field(default_factory=dict)
    animations: List[AnimationClip] = field(default_factory=list)


def morph_slot_names(mesh: MeshNode) -> List[str]:
    """Name of every morph slot of a mesh, in slot order.

    Slots missing from the dictionary are named after the mesh so that they
    never collide with another mesh's morphs.
    """
    slot_count = max(mesh.geometry.morph_slot_count, len(mesh.morph_target_influences or []))
    names = [f"{mesh.name}.{slot}" for slot in range(slot_count)]
    for name, slot in (mesh.morph_target_dictionary or {}).items():
        if slot < slot_count:
            names[slot] = name
    return names


def _merge_attributes(meshes: List[MeshNode]) -> Dict[str, BufferAttribute]:
    layout: Dict[str, BufferAttribute] = {}
    for mesh in meshes:
        for name, attribute in mesh.geometry.attributes.items():
            layout.setdefault(name, attribute)

    merged = {}
    for name, template in layout.items():
        parts = []
        for mesh in meshes:
            attribute = mesh.geometry.attributes.get(name)
            if attribute is None:
                parts.append(np.zeros(mesh.geometry.vertex_count * template.item_size, dtype=template.array.dtype))
                continue
            if attribute.item_size != template.item_size:
                raise PreconditionError(
                    f"Attribute '{name}' of '{mesh.name}' has item size {attribute.item_size}, "
                    f"expected {template.item_size}"
                )
            parts.append(attribute.array)
        merged[name] = BufferAttribute(np.concatenate(parts), template.item_size, template.normalized)
    return merged


def _merge_index(meshes: List[MeshNode]):
    if all(mesh.geometry.index is None for mesh in meshes):
        return None

    parts = []
    vertex_offset = 0
    for mesh in meshes:
        vertex_count = mesh.geometry.vertex_count
        index = mesh.geometry.index
        if index is None:
            index = np.arange(vertex_count)
        parts.append(index.astype(np.uint32) + vertex_offset)
        vertex_offset += vertex_count
    return np.concatenate(parts).astype(np.uint32)


def _relative_delta(mesh: MeshNode, attribute_name: str, buffer: BufferAttribute) -> np.ndarray:
    delta = buffer.array.astype(np.float32)
    if not mesh.geometry.morph_targets_relative:
        base = mesh.geometry.attributes.get(attribute_name)
        if base is not None:
            delta = delta - base.array.astype(np.float32)
    return delta


def merge_geometry(meshes: List[MeshNode]) -> MergedGeometry:
    """Merge mesh geometries in list order.

    Morph targets are unified by name: same-named morphs share one merged
    slot, and meshes lacking a morph contribute zero deltas to it.
    """
    if not meshes:
        raise PreconditionError("No meshes to merge")

    geometry = Geometry(
        attributes=_merge_attributes(meshes),
        index=_merge_index(meshes),
        morph_targets_relative=True,
    )

    # Union of morph names, first appearance order
    slot_names = [morph_slot_names(mesh) for mesh in meshes]
    dictionary: Dict[str, int] = {}
    influences: List[float] = []
    for mesh, names in zip(meshes, slot_names):
        for slot, name in enumerate(names):
            if name in dictionary:
                continue
            dictionary[name] = len(dictionary)
            weights = mesh.morph_target_influences or []
            influences.append(float(weights[slot]) if slot < len(weights) else 0.0)

    morph_attribute_names: List[str] = []
    for mesh in meshes:
        for name in mesh.geometry.morph_attributes:
            if name not in morph_attribute_names:
                morph_attribute_names.append(name)

    for attribute_name in morph_attribute_names:
        base = geometry.attributes.get(attribute_name)
        item_size = base.item_size if base is not None else 3
        slot_lookup = [{name: slot for slot, name in enumerate(names)} for names in slot_names]
        buffers = []
        for morph_name in dictionary:
            parts = []
            for mesh, lookup in zip(meshes, slot_lookup):
                mesh_buffers = mesh.geometry.morph_attributes.get(attribute_name, [])
                slot = lookup.get(morph_name)
                if slot is not None and slot < len(mesh_buffers):
                    parts.append(_relative_delta(mesh, attribute_name, mesh_buffers[slot]))
                else:
                    parts.append(np.zeros(mesh.geometry.vertex_count * item_size, dtype=np.float32))
            buffers.append(BufferAttribute(np.concatenate(parts), item_size))
        geometry.morph_attributes[attribute_name] = buffers

    animations: List[AnimationClip] = []
    for mesh in meshes:
        for clip in mesh.animations:
            if all(existing.name != clip.name for existing in animations):
                animations.append(clip)

    print(f"Merged {len(meshes)} meshes: {geometry.vertex_count} vertices, "
          f"{len(dictionary)} morph targets, {len(animations)} clips")
    return MergedGeometry(geometry, influences, dictionary, animations)


def _sample_keyframes(times: np.ndarray, keyframes: np.ndarray, at: np.ndarray, step: bool) -> np.ndarray:
    if step:
        index = np.clip(np.searchsorted(times, at, side='right') - 1, 0, len(times) - 1)
        return keyframes[index]
    return np.stack([np.interp(at, times, keyframes[:, slot]) for slot in range(keyframes.shape[1])], axis=1)


def _merged_weight_track(tracks: List[KeyframeTrack], slot_names: Dict[str, List[Optional[str]]],
                         dictionary: Dict[str, int], target_name: str) -> KeyframeTrack:
    step = all(track.interpolation == 'STEP' for track in tracks)
    times = np.unique(np.concatenate([np.asarray(track.times, dtype=np.float32) for track in tracks]))
    values = np.zeros((len(times), len(dictionary)), dtype=np.float32)

    for track in tracks:
        names = slot_names[track.node_name]
        track_times = np.asarray(track.times, dtype=np.float32)
        if not len(track_times):
            continue
        keyframes = np.asarray(track.values, dtype=np.float32).reshape(len(track_times), -1)
        if track.interpolation == 'CUBICSPLINE':
            # in-tangent, value, out-tangent per keyframe
            keyframes = keyframes.reshape(len(track_times), 3, -1)[:, 1, :]
        if keyframes.shape[1] != len(names):
            raise PreconditionError(
                f"Weights track of '{track.node_name}' has {keyframes.shape[1]} values per keyframe, "
                f"expected {len(names)}"
            )
        sampled = _sample_keyframes(track_times, keyframes, times, step)
        for slot, name in enumerate(names):
            if name is not None and name in dictionary:
                values[:, dictionary[name]] = sampled[:, slot]

    return KeyframeTrack(
        node_name=target_name,
        path='weights',
        times=times,
        values=values.reshape(-1),
        interpolation='STEP' if step else 'LINEAR',
    )


def remap_weight_tracks(clips: Sequence[AnimationClip], slot_names: Dict[str, List[Optional[str]]],
                        dictionary: Dict[str, int], target_name: str = COMBINED_MESH_NAME) -> List[AnimationClip]:
    """Point morph weight tracks of merged meshes at the merged mesh.

    `slot_names` maps a merged mesh's name to the merged morph name of each of
    its authored slots, None for slots baked away. Every clip animating such a
    mesh is replaced by a copy whose weights tracks are folded into a single
    track laid out like `dictionary`; slots nobody animates stay at zero.
    Keyframes of several tracks are resampled onto the union of their times.
    """
    result = []
    for clip in clips:
        sources = [track for track in clip.tracks if track.path == 'weights' and track.node_name in slot_names]
        if not sources:
            result.append(clip)
            continue
        tracks = [track for track in clip.tracks if track not in sources]
        tracks.append(_merged_weight_track(sources, slot_names, dictionary, target_name))
        print(f"  Retargeted {len(sources)} weights tracks of clip '{clip.name}' to '{target_name}'")
        result.append(AnimationClip(clip.name, tracks))
    return result
