"""
Avatar Combiner Constants
Well-known node names, attribute names and defaults shared by the pipeline.
"""

# Node names
AVATAR_GROUP_NAME = 'Avatar'
SCENE_NAME = 'Scene'
AVATAR_ROOT_NAME = 'AvatarRoot'
COMBINED_MESH_NAME = 'CombinedMesh'
COMBINED_MATERIAL_NAME = 'CombinedMaterial'

# Node type tags
TYPE_OBJECT = 'Object3D'
TYPE_GROUP = 'Group'
TYPE_BONE = 'Bone'
TYPE_MESH = 'Mesh'
TYPE_SKINNED_MESH = 'SkinnedMesh'

# Vertex attribute names
ATTR_POSITION = 'position'
ATTR_NORMAL = 'normal'
ATTR_TANGENT = 'tangent'
ATTR_UV = 'uv'
ATTR_UV2 = 'uv2'
ATTR_COLOR = 'color'
ATTR_SKIN_INDEX = 'skin_index'
ATTR_SKIN_WEIGHT = 'skin_weight'

# glTF attribute semantic <-> internal attribute name
GLTF_ATTRIBUTES = {
    'POSITION': ATTR_POSITION,
    'NORMAL': ATTR_NORMAL,
    'TANGENT': ATTR_TANGENT,
    'TEXCOORD_0': ATTR_UV,
    'TEXCOORD_1': ATTR_UV2,
    'COLOR_0': ATTR_COLOR,
    'JOINTS_0': ATTR_SKIN_INDEX,
    'WEIGHTS_0': ATTR_SKIN_WEIGHT,
}
GLTF_MORPH_ATTRIBUTES = {
    'POSITION': ATTR_POSITION,
    'NORMAL': ATTR_NORMAL,
    'TANGENT': ATTR_TANGENT,
}

# Renderers keep up to this many morph slots as live per-vertex channels
MAX_LIVE_MORPH_SLOTS = 8

# Authoring components
HUBS_COMPONENTS_EXTENSION = 'MOZ_hubs_components'
VISEME_MORPH_NAME = 'MouthFlap'
DEFAULT_IDLE_CLIP = 'idle_eyes,Blinks'

# Texture atlas
ATLAS_SIZE = 1024
FLAT_NORMAL_COLOR = (128, 128, 255, 255)
