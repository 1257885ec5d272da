"""
Scene Schema: Canonical Skinned Character Representation

Both codecs produce and consume this model. A Scene owns exactly one Mesh,
an optional Skeleton and at most one AnimationClip.

COORDINATE SYSTEM:
Left-handed, Y-up, matching the game engine (Direct3D conventions).
The GLTF codec converts to and from GLTF's right-handed system at its
boundary by negating Z; nothing inside a Scene is ever in GLTF space.

ROTATIONS:
- Quaternions are stored as [w, x, y, z]
- Bind-pose rotation is identity for every joint except "root"

SKELETON CONVENTIONS:
- Joint 0 is named "root"; joint i (i >= 1) is named "bone_{i}"
- Names are authoritative: they identify joints across files
- A joint's parent index is strictly lower than its own index, so the
  joint list is already topologically sorted and cannot contain cycles
- Only the root translation is animated

ANIMATION:
- One RotationTrack per animated non-root joint (keyframe time -> quaternion)
- Exactly one TranslationTrack, always targeting the root
- A clip may carry more rotation tracks than the skeleton has joints; the
  reconciler decides what survives export

METADATA:
Every model carries an optional `metadata` dict with source-specific data
for lossless round-trips (raw P3M blocks, raw FRM matrices). Codecs only
reuse it when the decoded values still match the Scene.
"""

from __future__ import annotations
import math
import re
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, model_validator

from chaseconv.exceptions import StructuralError

# Type aliases for better readability
Vec2 = List[float]
Vec3 = List[float]
Quat4 = List[float]  # [w, x, y, z]

ROOT_JOINT_NAME = "root"
MAX_INFLUENCES = 4
IDENTITY_TOLERANCE = 1e-4

_BONE_NAME_PATTERN = re.compile(r"bone_([1-9][0-9]*)")


def joint_name(index: int) -> str:
    """Return the canonical name of the joint at `index`."""
    if index == 0:
        return ROOT_JOINT_NAME
    return f"bone_{index}"


def joint_index_from_name(name: Optional[str]) -> Optional[int]:
    """
    Parse a joint name back to its index.

    Args:
        name: Node or joint name

    Returns:
        0 for "root", i for "bone_{i}", None for anything else
        (including non-canonical spellings such as "bone_01" or "bone_0")
    """
    if name == ROOT_JOINT_NAME:
        return 0
    if not name:
        return None
    match = _BONE_NAME_PATTERN.fullmatch(name)
    if match is None:
        return None
    return int(match.group(1))


def is_identity_rotation(quat: Quat4, tolerance: float = IDENTITY_TOLERANCE) -> bool:
    """Check whether quaternion [w, x, y, z] is the identity rotation within tolerance."""
    magnitude = math.sqrt(sum(c * c for c in quat))
    if magnitude == 0:
        return False
    return all(abs(c / magnitude) <= tolerance for c in quat[1:])


#########################
# GEOMETRY
#########################

class Vertex(BaseModel):
    """
    A skinned vertex in model space (bind pose).

    `joints` and `weights` are parallel lists of at most four influences.
    An empty `joints` list means the vertex follows no joint.
    """
    model_config = ConfigDict(extra='forbid')

    position: Vec3 = Field(..., min_length=3, max_length=3, description="Model-space bind-pose position.")
    normal: Vec3 = Field(default=[0.0, 0.0, 0.0], min_length=3, max_length=3, description="Vertex normal.")
    uv: Vec2 = Field(default=[0.0, 0.0], min_length=2, max_length=2, description="Texture coordinates.")
    joints: List[int] = Field(default=[], max_length=MAX_INFLUENCES, description="Influencing joint indices.")
    weights: List[float] = Field(default=[], max_length=MAX_INFLUENCES, description="Influence weights, parallel to joints.")

    @model_validator(mode='after')
    def validate_influences(self):
        if len(self.joints) != len(self.weights):
            raise ValueError("joints and weights must have the same length")
        if any(j < 0 for j in self.joints):
            raise ValueError("joint indices must be non-negative")
        return self

    def dominant_joint(self) -> Optional[int]:
        """Joint with the highest weight (first one wins on ties), or None."""
        if not self.joints:
            return None
        best = 0
        for i in range(1, len(self.joints)):
            if self.weights[i] > self.weights[best]:
                best = i
        return self.joints[best]


class Mesh(BaseModel):
    model_config = ConfigDict(extra='forbid')

    name: str = Field("", description="Mesh name (used for output file names when present).")
    vertices: List[Vertex] = Field(default=[], description="Ordered vertices.")
    indices: List[int] = Field(default=[], description="Flat triangle list, three indices per face.")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Source-specific data for lossless round-trips.")

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3


#########################
# SKELETON
#########################

class Joint(BaseModel):
    """
    A joint of the skeleton with its LOCAL bind-pose transform.

    Translation and rotation are relative to the parent joint.
    """
    model_config = ConfigDict(extra='forbid')

    name: str = Field(..., description="'root' for joint 0, 'bone_{i}' otherwise.")
    parent: Optional[int] = Field(None, description="Parent joint index or None for root.")
    translation: Vec3 = Field(default=[0.0, 0.0, 0.0], min_length=3, max_length=3, description="LOCAL bind translation.")
    rotation: Quat4 = Field(default=[1.0, 0.0, 0.0, 0.0], min_length=4, max_length=4, description="LOCAL bind rotation [w, x, y, z].")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Source-specific data for lossless round-trips.")


class Skeleton(BaseModel):
    model_config = ConfigDict(extra='forbid')

    joints: List[Joint] = Field(default=[], description="Ordered joints; index 0 is the root.")

    @property
    def joint_count(self) -> int:
        return len(self.joints)

    def children_of(self, index: int) -> List[int]:
        """Indices of the joints whose parent is `index`, in order."""
        return [i for i, joint in enumerate(self.joints) if joint.parent == index]


#########################
# ANIMATION
#########################

class RotationTrack(BaseModel):
    """Keyframed rotation of one non-root joint."""
    model_config = ConfigDict(extra='forbid')

    joint_index: int = Field(..., description="Target joint index (>= 1).")
    times: List[float] = Field(default=[], description="Keyframe times in seconds, non-decreasing.")
    rotations: List[Quat4] = Field(default=[], description="LOCAL rotations [w, x, y, z], parallel to times.")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Source extras (e.g., raw FRM matrices).")


class TranslationTrack(BaseModel):
    """Keyframed translation of the root joint."""
    model_config = ConfigDict(extra='forbid')

    times: List[float] = Field(default=[], description="Keyframe times in seconds, non-decreasing.")
    translations: List[Vec3] = Field(default=[], description="Root translations, parallel to times.")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Source extras.")


class AnimationClip(BaseModel):
    model_config = ConfigDict(extra='forbid')

    name: str = Field("animation", description="Clip name (used for output file names).")
    rotation_tracks: List[RotationTrack] = Field(default=[], description="Per-joint rotation tracks.")
    translation_track: TranslationTrack = Field(default_factory=TranslationTrack, description="Root translation track.")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Source extras (e.g., FRM version and raw deltas).")

    @property
    def duration(self) -> float:
        times = [t for track in self.rotation_tracks for t in track.times]
        times.extend(self.translation_track.times)
        return max(times) if times else 0.0

    def track_for(self, joint_index: int) -> Optional[RotationTrack]:
        """First rotation track targeting `joint_index`, or None."""
        for track in self.rotation_tracks:
            if track.joint_index == joint_index:
                return track
        return None


#########################
# TOP-LEVEL MODEL
#########################

class Scene(BaseModel):
    model_config = ConfigDict(extra='forbid')

    mesh: Mesh = Field(default_factory=Mesh, description="The mesh (empty for animation-only inputs).")
    skeleton: Optional[Skeleton] = Field(None, description="Joint hierarchy with bind pose.")
    animation: Optional[AnimationClip] = Field(None, description="Zero or one animation clip.")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Source-specific data for lossless round-trips.")

    @property
    def has_mesh(self) -> bool:
        return bool(self.mesh.vertices)

    def validate(self) -> "Scene":
        """
        Check every Scene invariant.

        Returns:
            The scene itself, so calls can be chained

        Raises:
            StructuralError: Naming violation, non-identity bind rotation on a
                non-root joint, unsorted parent index, dangling joint or
                vertex reference, or malformed track
        """
        joint_count = 0
        if self.skeleton is not None:
            _validate_skeleton(self.skeleton)
            joint_count = self.skeleton.joint_count
        _validate_mesh(self.mesh, joint_count)
        if self.animation is not None:
            _validate_animation(self.animation)
        return self


def _validate_skeleton(skeleton: Skeleton) -> None:
    if not skeleton.joints:
        raise StructuralError("Skeleton has no root joint", rule="naming", joint_index=0)

    for index, joint in enumerate(skeleton.joints):
        expected = joint_name(index)
        if joint.name != expected:
            raise StructuralError(
                f"Joint {index} is named '{joint.name}', expected '{expected}'",
                rule="naming", joint_index=index,
            )

        if index == 0:
            if joint.parent is not None:
                raise StructuralError("Root joint must not have a parent", rule="parent_order", joint_index=0)
            continue

        if joint.parent is None:
            raise StructuralError(
                f"Joint {index} has no parent; only the root may be parentless",
                rule="parent_order", joint_index=index,
            )
        if not 0 <= joint.parent < index:
            raise StructuralError(
                f"Joint {index} has parent {joint.parent}; parent index must be lower than the joint's own",
                rule="parent_order", joint_index=index,
            )
        if not is_identity_rotation(joint.rotation):
            raise StructuralError(
                f"Joint {index} has non-identity bind rotation {joint.rotation}",
                rule="bind_rotation", joint_index=index,
            )


def _validate_mesh(mesh: Mesh, joint_count: int) -> None:
    for vertex_index, vertex in enumerate(mesh.vertices):
        for joint_index in vertex.joints:
            if joint_index >= joint_count:
                raise StructuralError(
                    f"Vertex {vertex_index} references joint {joint_index}, "
                    f"but the skeleton has {joint_count} joints",
                    rule="dangling_joint", joint_index=joint_index, vertex_index=vertex_index,
                )

    if len(mesh.indices) % 3 != 0:
        raise StructuralError(
            f"Index count {len(mesh.indices)} is not a multiple of three",
            rule="dangling_vertex",
        )
    vertex_count = len(mesh.vertices)
    for index in mesh.indices:
        if not 0 <= index < vertex_count:
            raise StructuralError(
                f"Triangle index {index} is outside the {vertex_count} vertices",
                rule="dangling_vertex", vertex_index=index,
            )


def _validate_animation(clip: AnimationClip) -> None:
    seen = set()
    for track in clip.rotation_tracks:
        if track.joint_index < 1:
            raise StructuralError(
                f"Rotation track targets joint {track.joint_index}; only non-root joints carry rotation tracks",
                rule="dangling_joint", joint_index=track.joint_index,
            )
        if track.joint_index in seen:
            raise StructuralError(
                f"More than one rotation track targets joint {track.joint_index}",
                rule="track_shape", joint_index=track.joint_index,
            )
        seen.add(track.joint_index)
        if len(track.times) != len(track.rotations):
            raise StructuralError(
                f"Rotation track for joint {track.joint_index} has {len(track.times)} times "
                f"but {len(track.rotations)} values",
                rule="track_shape", joint_index=track.joint_index,
            )
        _check_times(track.times, track.joint_index)

    translation = clip.translation_track
    if len(translation.times) != len(translation.translations):
        raise StructuralError(
            f"Root translation track has {len(translation.times)} times "
            f"but {len(translation.translations)} values",
            rule="track_shape", joint_index=0,
        )
    _check_times(translation.times, 0)


def _check_times(times: List[float], joint_index: int) -> None:
    for previous, current in zip(times, times[1:]):
        if current < previous:
            raise StructuralError(
                f"Keyframe times for joint {joint_index} are not sorted",
                rule="track_shape", joint_index=joint_index,
            )


# Rebuild models for forward references
Vertex.model_rebuild()
Mesh.model_rebuild()
Joint.model_rebuild()
Skeleton.model_rebuild()
RotationTrack.model_rebuild()
TranslationTrack.model_rebuild()
AnimationClip.model_rebuild()
Scene.model_rebuild()
