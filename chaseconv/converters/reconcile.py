"""
Skeleton/Animation Reconciler

Resolves the asymmetry between a model's skeleton and the animation that
plays on it, and owns the bind-pose math shared by both codecs.

Import side:
- enforce_bind_pose(): every non-root joint must have identity bind rotation;
  a violation is a hard BindPoseViolation, never a warning

Export side:
- reconcile_animation(): index-based keep/discard of rotation tracks. A track
  survives only if its joint exists in the target skeleton. The root
  translation track always survives. The discard count is returned so the
  orchestrator can report it; nothing is remapped, merged or interpolated.

Bind matrices:
- Parent index < own index, so world matrices are computed in a single
  forward pass with no traversal
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from chaseconv.exceptions import BindPoseViolation, StructuralError
from chaseconv.schema.scene import AnimationClip, Joint, Scene, Skeleton, is_identity_rotation
from chaseconv.converters.rotation_utils import quaternion_to_matrix

logger = logging.getLogger(__name__)

BIND_POSE_TOLERANCE = 1e-4
# Inverse bind matrices are usually float32, so they get a looser bound
INVERSE_BIND_TOLERANCE = 1e-3


def local_bind_matrix(joint: Joint) -> np.ndarray:
    """4x4 local bind transform (translation * rotation) of a joint."""
    matrix = np.eye(4)
    matrix[:3, :3] = quaternion_to_matrix(joint.rotation)
    matrix[:3, 3] = joint.translation
    return matrix


def world_bind_matrices(skeleton: Skeleton) -> np.ndarray:
    """
    Compute world bind matrices of every joint.

    Args:
        skeleton: Skeleton with parent indices lower than their children's

    Returns:
        Array of shape (joint_count, 4, 4)

    Raises:
        StructuralError: If a parent index is not lower than the joint's own
    """
    world = np.zeros((skeleton.joint_count, 4, 4))
    for index, joint in enumerate(skeleton.joints):
        local = local_bind_matrix(joint)
        if joint.parent is None:
            world[index] = local
            continue
        if not 0 <= joint.parent < index:
            raise StructuralError(
                f"Joint {index} has parent {joint.parent}; parent index must be lower than the joint's own",
                rule="parent_order", joint_index=index,
            )
        world[index] = world[joint.parent] @ local
    return world


def inverse_bind_matrices(skeleton: Skeleton) -> np.ndarray:
    """Inverse of every world bind matrix, shape (joint_count, 4, 4)."""
    world = world_bind_matrices(skeleton)
    if len(world) == 0:
        return world
    return np.linalg.inv(world)


def joint_world_translations(skeleton: Skeleton) -> np.ndarray:
    """
    World-space bind position of every joint, shape (joint_count, 3).

    Returned as float32: the game formats store positions as 32-bit floats,
    and vertex offsets are added and removed in that precision.
    """
    return world_bind_matrices(skeleton)[:, :3, 3].astype(np.float32)


def enforce_bind_pose(
    skeleton: Skeleton,
    inverse_binds: Optional[Sequence[np.ndarray]] = None,
    tolerance: float = BIND_POSE_TOLERANCE,
) -> None:
    """
    Reject skeletons whose non-root joints carry a bind rotation.

    Downstream animation math assumes identity bind rotation on every
    non-root joint, so this must pass before a Skeleton is accepted.

    Args:
        skeleton: Skeleton with local bind transforms
        inverse_binds: Optional inverse bind matrices (column-vector 4x4),
            one per joint, used only to cross-check rotations
        tolerance: Maximum deviation of quaternion x/y/z from zero

    Raises:
        BindPoseViolation: If a non-root joint has non-identity local bind
            rotation, or its inverse bind matrix implies one
    """
    for index, joint in enumerate(skeleton.joints):
        if index == 0:
            continue
        if not is_identity_rotation(joint.rotation, tolerance):
            raise BindPoseViolation(
                f"Joint '{joint.name}' has non-identity bind rotation {joint.rotation}",
                joint_index=index,
            )

    if inverse_binds is None:
        return

    world = world_bind_matrices(skeleton)
    for index in range(1, min(len(world), len(inverse_binds))):
        inverse_rotation = np.asarray(inverse_binds[index], dtype=np.float64)[:3, :3]
        product = inverse_rotation @ world[index][:3, :3]
        if not np.allclose(product, np.eye(3), atol=INVERSE_BIND_TOLERANCE):
            raise BindPoseViolation(
                f"Inverse bind matrix of joint '{skeleton.joints[index].name}' "
                f"implies a non-identity bind rotation",
                joint_index=index,
            )


def reconcile_animation(
    clip: Optional[AnimationClip],
    skeleton: Optional[Skeleton],
) -> Tuple[Optional[AnimationClip], int]:
    """
    Keep the rotation tracks the target skeleton can play, discard the rest.

    Args:
        clip: Animation clip (may be None)
        skeleton: Target skeleton (None means there is nothing to check against)

    Returns:
        Tuple of (reconciled clip, number of discarded rotation tracks)
    """
    if clip is None or skeleton is None:
        return clip, 0

    kept = [track for track in clip.rotation_tracks if track.joint_index < skeleton.joint_count]
    discarded = len(clip.rotation_tracks) - len(kept)
    if discarded:
        logger.warning(
            f"Discarding {discarded} rotation track(s) for joints beyond the "
            f"skeleton's {skeleton.joint_count} joints"
        )
    return clip.model_copy(update={"rotation_tracks": kept}), discarded


def reconcile_scene(scene: Scene) -> Tuple[Scene, int]:
    """Apply reconcile_animation() to a Scene, returning a new Scene and the discard count."""
    clip, discarded = reconcile_animation(scene.animation, scene.skeleton)
    if discarded == 0:
        return scene, 0
    return scene.model_copy(update={"animation": clip}), discarded
