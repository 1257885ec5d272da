"""
Tests for bind-pose math, the skeleton/animation reconciler and coordinate helpers
"""
import logging

import numpy as np
import pytest

from chaseconv.exceptions import BindPoseViolation, StructuralError
from chaseconv.converters.coordinate_utils import flip_winding, mirror_position, mirror_quaternion, mirror_scene
from chaseconv.converters.reconcile import (
    enforce_bind_pose,
    inverse_bind_matrices,
    joint_world_translations,
    reconcile_animation,
    reconcile_scene,
    world_bind_matrices,
)
from chaseconv.converters.rotation_utils import (
    matrix_to_quaternion,
    normalize_quaternion,
    quaternion_to_matrix,
    slerp_quaternions,
)
from chaseconv.schema.scene import AnimationClip, Joint, RotationTrack, Skeleton
from builders import create_scene

QUARTER_TURN_Y = [0.7071067811865476, 0.0, 0.7071067811865476, 0.0]


def create_tracks(count: int):
    return [
        RotationTrack(joint_index=i, times=[0.0, 1.0], rotations=[[1, 0, 0, 0], [1, 0, 0, 0]])
        for i in range(1, count + 1)
    ]


class TestBindMatrices:

    def test_world_translation_accumulates(self):
        """Test that world bind positions sum down the chain"""
        skeleton = create_scene(bone_count=3).skeleton
        world = world_bind_matrices(skeleton)

        assert world.shape == (4, 4, 4)
        assert world[3][:3, 3] == pytest.approx([0.0, 3.0, 0.0])
        assert joint_world_translations(skeleton)[2] == pytest.approx([0.0, 2.0, 0.0])
        assert joint_world_translations(skeleton).dtype == np.float32

    def test_root_rotation_applies_to_children(self):
        skeleton = create_scene(bone_count=1).skeleton
        skeleton.joints[0].rotation = QUARTER_TURN_Y
        skeleton.joints[1].translation = [1.0, 0.0, 0.0]

        # +90 degrees about Y maps +X to -Z
        assert joint_world_translations(skeleton)[1] == pytest.approx([0.0, 0.0, -1.0], abs=1e-6)

    def test_inverse_bind_matrices(self):
        skeleton = create_scene(bone_count=3).skeleton
        world = world_bind_matrices(skeleton)
        inverse = inverse_bind_matrices(skeleton)

        for w, i in zip(world, inverse):
            assert np.allclose(i @ w, np.eye(4))

    def test_parent_order_enforced(self):
        skeleton = Skeleton(joints=[
            Joint(name="root"),
            Joint(name="bone_1", parent=2),
            Joint(name="bone_2", parent=0),
        ])
        with pytest.raises(StructuralError) as exc_info:
            world_bind_matrices(skeleton)

        assert exc_info.value.rule == "parent_order"


class TestEnforceBindPose:

    def test_identity_bind_pose_passes(self):
        skeleton = create_scene(bone_count=3).skeleton
        enforce_bind_pose(skeleton, inverse_bind_matrices(skeleton))

    def test_root_rotation_allowed(self):
        skeleton = create_scene(bone_count=2).skeleton
        skeleton.joints[0].rotation = QUARTER_TURN_Y
        enforce_bind_pose(skeleton, inverse_bind_matrices(skeleton))

    def test_non_root_rotation_rejected(self):
        """Test that a rotated non-root joint is a hard error"""
        skeleton = create_scene(bone_count=2).skeleton
        skeleton.joints[2].rotation = QUARTER_TURN_Y

        with pytest.raises(BindPoseViolation) as exc_info:
            enforce_bind_pose(skeleton)

        assert exc_info.value.joint_index == 2

    def test_inverse_bind_rotation_rejected(self):
        """Test that inverse bind matrices implying a rotation are rejected"""
        skeleton = create_scene(bone_count=2).skeleton
        inverse = inverse_bind_matrices(skeleton)
        inverse[1][:3, :3] = quaternion_to_matrix(QUARTER_TURN_Y)

        with pytest.raises(BindPoseViolation) as exc_info:
            enforce_bind_pose(skeleton, inverse)

        assert exc_info.value.joint_index == 1


class TestReconcileAnimation:
    """Test index-based keep/discard of rotation tracks"""

    def test_extra_tracks_discarded(self, caplog):
        """Test that 10 tracks against 6 bones keeps joints 1-6"""
        skeleton = create_scene(bone_count=6).skeleton
        clip = AnimationClip(rotation_tracks=create_tracks(10))

        with caplog.at_level(logging.WARNING):
            reconciled, discarded = reconcile_animation(clip, skeleton)

        assert discarded == 4
        assert [t.joint_index for t in reconciled.rotation_tracks] == [1, 2, 3, 4, 5, 6]
        assert "Discarding 4" in caplog.text
        assert len(clip.rotation_tracks) == 10

    def test_fewer_tracks_kept(self):
        skeleton = create_scene(bone_count=6).skeleton
        clip = AnimationClip(rotation_tracks=create_tracks(3))

        reconciled, discarded = reconcile_animation(clip, skeleton)

        assert discarded == 0
        assert len(reconciled.rotation_tracks) == 3

    def test_translation_track_always_kept(self):
        skeleton = create_scene(bone_count=1).skeleton
        clip = AnimationClip(rotation_tracks=create_tracks(5))
        clip.translation_track.times = [0.0]
        clip.translation_track.translations = [[1.0, 2.0, 3.0]]

        reconciled, _ = reconcile_animation(clip, skeleton)

        assert reconciled.translation_track.translations == [[1.0, 2.0, 3.0]]

    def test_no_skeleton_passes_through(self):
        clip = AnimationClip(rotation_tracks=create_tracks(10))

        reconciled, discarded = reconcile_animation(clip, None)

        assert reconciled is clip
        assert discarded == 0

    def test_reconcile_scene(self):
        scene = create_scene(bone_count=2)
        scene.animation = AnimationClip(rotation_tracks=create_tracks(4))

        reconciled, discarded = reconcile_scene(scene)

        assert discarded == 2
        assert len(reconciled.animation.rotation_tracks) == 2
        assert len(scene.animation.rotation_tracks) == 4


class TestCoordinateUtils:
    """Test the game ↔ GLTF mirror"""

    def test_mirror_position(self):
        assert mirror_position([1.0, 2.0, 3.0]) == [1.0, 2.0, -3.0]

    def test_mirror_quaternion_matches_matrix_mirror(self):
        """Test that [w,x,y,z] → [w,-x,-y,z] equals M R M with M = diag(1,1,-1)"""
        quat = normalize_quaternion([0.9, 0.1, -0.3, 0.2])
        mirror = np.diag([1.0, 1.0, -1.0])

        expected = mirror @ quaternion_to_matrix(quat) @ mirror

        assert np.allclose(quaternion_to_matrix(mirror_quaternion(quat)), expected)

    def test_flip_winding(self):
        assert flip_winding([0, 1, 2, 3, 4, 5]) == [0, 2, 1, 3, 5, 4]

    def test_mirror_scene_is_involution(self):
        scene = create_scene(bone_count=2)
        scene.skeleton.joints[1].translation = [0.0, 1.0, 0.5]
        scene.mesh.vertices[0].position = [0.0, 1.0, 0.25]

        mirrored = mirror_scene(scene)

        assert mirrored.skeleton.joints[1].translation == [0.0, 1.0, -0.5]
        assert mirrored.mesh.indices == [0, 2, 1]
        assert scene.mesh.vertices[0].position == [0.0, 1.0, 0.25]
        assert mirror_scene(mirrored) == scene


class TestRotationUtils:

    def test_matrix_roundtrip(self):
        quat = normalize_quaternion([0.9, 0.1, -0.3, 0.2])
        assert matrix_to_quaternion(quaternion_to_matrix(quat)) == pytest.approx(quat)

    def test_degenerate_matrix(self):
        with pytest.raises(ValueError):
            matrix_to_quaternion(np.zeros((3, 3)))

    def test_slerp_clamps_and_interpolates(self):
        keys = [[1.0, 0.0, 0.0, 0.0], QUARTER_TURN_Y]
        sampled = slerp_quaternions([0.0, 1.0], keys, [-1.0, 0.5, 2.0])

        assert sampled[0] == pytest.approx([1.0, 0.0, 0.0, 0.0])
        assert sampled[1] == pytest.approx([0.9238795, 0.0, 0.3826834, 0.0], abs=1e-6)
        assert sampled[2] == pytest.approx(QUARTER_TURN_Y)
