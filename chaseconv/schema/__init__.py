"""Scene schema definitions."""
from .scene import (
    Scene,
    Mesh,
    Vertex,
    Skeleton,
    Joint,
    AnimationClip,
    RotationTrack,
    TranslationTrack,
    joint_name,
    joint_index_from_name,
    is_identity_rotation,
)

__all__ = [
    "Scene",
    "Mesh",
    "Vertex",
    "Skeleton",
    "Joint",
    "AnimationClip",
    "RotationTrack",
    "TranslationTrack",
    "joint_name",
    "joint_index_from_name",
    "is_identity_rotation",
]
