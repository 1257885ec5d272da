"""
Centralized quaternion/matrix conversion utilities.

All codecs (P3M, FRM, GLTF) and the reconciler should use these utilities
to ensure consistent, accurate rotations across formats.

Key principles:
- Quaternions are [w, x, y, z] everywhere in the Scene; scipy's [x, y, z, w]
  order never leaks out of this module
- Matrices are 3x3 numpy arrays in column-vector convention (v' = M @ v)
- Quaternions produced here are unit length with w >= 0
"""

import math
from typing import List, Sequence

import numpy as np
from scipy.spatial.transform import Rotation, Slerp

IDENTITY_QUATERNION = [1.0, 0.0, 0.0, 0.0]

# Determinant below which a rotation matrix is considered degenerate
DEGENERATE_DETERMINANT = 1e-6


def quaternion_to_scipy(quat: Sequence[float]) -> List[float]:
    """Reorder [w, x, y, z] to scipy's [x, y, z, w]."""
    w, x, y, z = quat
    return [x, y, z, w]


def quaternion_from_scipy(quat: Sequence[float]) -> List[float]:
    """Reorder scipy's [x, y, z, w] to [w, x, y, z]."""
    x, y, z, w = quat
    return [float(w), float(x), float(y), float(z)]


def quaternion_to_matrix(quat: Sequence[float]) -> np.ndarray:
    """
    Convert quaternion [w, x, y, z] to a 3x3 rotation matrix.

    Args:
        quat: Quaternion as [w, x, y, z] (normalized internally)

    Returns:
        3x3 rotation matrix in column-vector convention
    """
    normalized = normalize_quaternion(quat)
    return Rotation.from_quat(quaternion_to_scipy(normalized)).as_matrix()


def matrix_to_quaternion(matrix: np.ndarray) -> List[float]:
    """
    Convert a 3x3 rotation matrix to quaternion [w, x, y, z].

    Non-orthogonal input (e.g. float32 noise or uniform scale) is projected
    to the closest rotation by scipy.

    Args:
        matrix: 3x3 matrix in column-vector convention

    Returns:
        Normalized quaternion as [w, x, y, z] with w >= 0

    Raises:
        ValueError: If the matrix is degenerate
    """
    matrix = np.asarray(matrix, dtype=np.float64)[:3, :3]
    if is_degenerate_matrix(matrix):
        raise ValueError("Degenerate rotation matrix")
    quat = quaternion_from_scipy(Rotation.from_matrix(matrix).as_quat())
    return normalize_quaternion(quat)


def is_degenerate_matrix(matrix: np.ndarray) -> bool:
    """True if the 3x3 part has (almost) zero determinant or non-finite values."""
    matrix = np.asarray(matrix, dtype=np.float64)[:3, :3]
    if not np.all(np.isfinite(matrix)):
        return True
    return abs(float(np.linalg.det(matrix))) < DEGENERATE_DETERMINANT


def slerp_quaternions(
    times: Sequence[float],
    quats: Sequence[Sequence[float]],
    sample_times: Sequence[float],
) -> List[List[float]]:
    """
    Spherically interpolate a keyframed rotation at new times.

    Samples outside the keyframe range are clamped to the first/last key.

    Args:
        times: Keyframe times, non-decreasing
        quats: Keyframe quaternions [w, x, y, z], parallel to times
        sample_times: Times to sample at

    Returns:
        One quaternion [w, x, y, z] per sample time
    """
    if not quats:
        return [list(IDENTITY_QUATERNION) for _ in sample_times]
    if len(quats) == 1:
        return [normalize_quaternion(quats[0]) for _ in sample_times]

    # Slerp needs strictly increasing times; keep the last key of duplicates
    key_times: List[float] = []
    key_quats: List[List[float]] = []
    for t, q in zip(times, quats):
        if key_times and t <= key_times[-1]:
            key_quats[-1] = quaternion_to_scipy(q)
            continue
        key_times.append(float(t))
        key_quats.append(quaternion_to_scipy(q))

    if len(key_times) == 1:
        return [normalize_quaternion(quaternion_from_scipy(key_quats[0])) for _ in sample_times]

    slerp = Slerp(key_times, Rotation.from_quat(key_quats))
    clamped = np.clip(np.asarray(sample_times, dtype=np.float64), key_times[0], key_times[-1])
    sampled = slerp(clamped).as_quat()
    return [normalize_quaternion(quaternion_from_scipy(q)) for q in sampled]


def normalize_quaternion(quat: Sequence[float]) -> List[float]:
    """Normalize quaternion to unit length and ensure consistent sign (w >= 0)."""
    magnitude = math.sqrt(sum(float(x) * float(x) for x in quat))
    if magnitude == 0:
        return list(IDENTITY_QUATERNION)

    normalized = [float(x) / magnitude for x in quat]

    # q and -q represent the same rotation, so we choose w >= 0 convention
    if normalized[0] < 0:
        normalized = [-x for x in normalized]

    return normalized
