"""
Avatar Authoring Components
Typed view of the MOZ_hubs_components glTF node extension.

Known component kinds get their own dataclass; anything else is carried
through untouched as an OpaqueComponent so that shallow merging and export
keep it intact.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from avatar_constants import HUBS_COMPONENTS_EXTENSION


@dataclass
class MorphAudioFeedback:
    """Drive a morph target from the speaking user's audio level."""
    name: str
    min_value: float = 0.0
    max_value: float = 1.0
    key = 'morph-audio-feedback'

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'minValue': self.min_value, 'maxValue': self.max_value}


@dataclass
class LoopAnimation:
    """Play the comma separated clips in a loop."""
    clip: str
    paused: bool = False
    key = 'loop-animation'

    def to_dict(self) -> Dict[str, Any]:
        return {'clip': self.clip, 'paused': self.paused}


@dataclass
class UVScroll:
    """Shader-driven texture scrolling; meshes carrying it are never merged."""
    speed: Tuple[float, float] = (0.0, 0.0)
    increment: Tuple[float, float] = (0.0, 0.0)
    key = 'uv-scroll'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'speed': {'x': self.speed[0], 'y': self.speed[1]},
            'increment': {'x': self.increment[0], 'y': self.increment[1]},
        }


@dataclass
class OpaqueComponent:
    key: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.payload)


def _xy(value: Any) -> Tuple[float, float]:
    if isinstance(value, dict):
        return (float(value.get('x', 0.0)), float(value.get('y', 0.0)))
    if isinstance(value, (list, tuple)) and len(value) >= 2:
        return (float(value[0]), float(value[1]))
    return (0.0, 0.0)


def component_from_dict(key: str, payload: Optional[Dict[str, Any]]) -> Any:
    payload = payload if isinstance(payload, dict) else {}
    if key == MorphAudioFeedback.key and 'name' in payload:
        return MorphAudioFeedback(
            name=payload['name'],
            min_value=float(payload.get('minValue', 0.0)),
            max_value=float(payload.get('maxValue', 1.0)),
        )
    if key == LoopAnimation.key and 'clip' in payload:
        return LoopAnimation(clip=payload['clip'], paused=bool(payload.get('paused', False)))
    if key == UVScroll.key:
        return UVScroll(speed=_xy(payload.get('speed')), increment=_xy(payload.get('increment')))
    return OpaqueComponent(key=key, payload=dict(payload))


def components_from_extensions(extensions: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Read the hubs components out of a glTF `extensions` object."""
    if not extensions:
        return {}
    hubs = extensions.get(HUBS_COMPONENTS_EXTENSION) or {}
    return {key: component_from_dict(key, payload) for key, payload in hubs.items()}


def components_to_extensions(components: Dict[str, Any]) -> Dict[str, Any]:
    if not components:
        return {}
    return {HUBS_COMPONENTS_EXTENSION: {key: component.to_dict() for key, component in components.items()}}


def combine_hubs_components(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge `b` into `a`; later components replace earlier ones wholesale."""
    # TODO: nested keys of colliding components are clobbered, not merged
    a.update(b)
    return a
