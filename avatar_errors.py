"""
Avatar Combiner Errors
Every pipeline stage fails fast with one of these.
"""


class AvatarError(Exception):
    """Base class for avatar pipeline failures."""


class LoadError(AvatarError):
    """An asset could not be fetched or parsed."""


class PreconditionError(AvatarError):
    """An expected node, skeleton or attribute is missing."""


class ExportError(AvatarError):
    """The scene graph could not be written out."""
