"""
FRM (GrandChase animation) ↔ Scene codec

FRM stores one frame per 1/55 s. Each frame holds the root motion and one
4x4 matrix per bone:
- option (u8, unused), plus_x (f32, x delta since the previous frame),
  pos_y (f32, absolute y), then bone matrices
- Matrices are row-vector (Direct3D) convention; only their rotation part
  is meaningful
- v1.1 adds a "Frm Ver 1.1" header, u16 counts and a trailing per-frame z
  delta table; v1.0 has u8 counts and no z

Scene mapping:
- Bone j drives joint j + 1 (joint 0 is the synthetic root)
- Root translation is accumulated: x and z sum their deltas, y is absolute

Round-trips:
Raw matrices, deltas and option bytes are kept in metadata and reused while
the decoded values are unchanged, so an untouched file is reproduced byte
for byte.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from chaseconv.exceptions import EncodeError, ParseError, StructuralError
from chaseconv.schema.scene import AnimationClip, RotationTrack, Scene, TranslationTrack
from chaseconv.converters.grandchase.binary_utils import BinaryReader, BinaryWriter
from chaseconv.converters.rotation_utils import matrix_to_quaternion, quaternion_to_matrix, slerp_quaternions

logger = logging.getLogger(__name__)

FRAME_RATE = 55
VERSION_1_0 = "1.0"
VERSION_1_1 = "1.1"
VERSION_1_1_HEADER = b"Frm Ver 1.1\x00"
MAX_U8 = 0xFF
MAX_U16 = 0xFFFF

_FRAME_HEADER = 'Bff'
_MATRIX = '16f'
_IDENTITY_MATRIX = tuple(float(v) for v in np.eye(4).flatten())


@dataclass
class FrmFrame:
    option: int = 0
    plus_x: float = 0.0
    pos_y: float = 0.0
    # One row-major 4x4 matrix (16 floats) per bone
    bones: List[Tuple[float, ...]] = field(default_factory=list)


@dataclass
class FrmFile:
    version: str = VERSION_1_1
    frames: List[FrmFrame] = field(default_factory=list)
    # Per-frame z delta, v1.1 only
    pos_z: List[float] = field(default_factory=list)
    # Stored in the header, so a clip with no frames still has one
    bone_count: int = 0


#########################
# RAW READ/WRITE
#########################

def read_frm(data: bytes) -> FrmFile:
    """
    Parse FRM bytes into raw frames.

    Raises:
        ParseError: Truncated input or trailing bytes
    """
    reader = BinaryReader(data, "FRM")
    if data[:len(VERSION_1_1_HEADER)] == VERSION_1_1_HEADER:
        reader.read_bytes(len(VERSION_1_1_HEADER), "version header")
        version = VERSION_1_1
        frame_count, bone_count = reader.read('HH', "frame/bone counts")
    else:
        version = VERSION_1_0
        frame_count, bone_count = reader.read('BB', "frame/bone counts")

    frames = []
    for _ in range(frame_count):
        option, plus_x, pos_y = reader.read(_FRAME_HEADER, "frame header")
        bones = [reader.read(_MATRIX, "bone matrix block") for _ in range(bone_count)]
        frames.append(FrmFrame(option=option, plus_x=plus_x, pos_y=pos_y, bones=bones))

    pos_z = []
    if version == VERSION_1_1:
        pos_z = list(reader.read(f'{frame_count}f', "z translation block"))
    reader.expect_end()
    return FrmFile(version=version, frames=frames, pos_z=pos_z, bone_count=bone_count)


def write_frm(frm: FrmFile) -> bytes:
    """
    Serialize raw frames back to FRM bytes.

    Raises:
        EncodeError: A frame whose matrix count differs from the header bone count
    """
    for index, frame in enumerate(frm.frames):
        if len(frame.bones) != frm.bone_count:
            raise EncodeError(f"FRM frame {index} has {len(frame.bones)} bone matrices, expected {frm.bone_count}")

    writer = BinaryWriter("FRM")
    if frm.version == VERSION_1_1:
        writer.write_bytes(VERSION_1_1_HEADER)
        writer.write('HH', len(frm.frames), frm.bone_count)
    else:
        writer.write('BB', len(frm.frames), frm.bone_count)

    for frame in frm.frames:
        writer.write(_FRAME_HEADER, frame.option, frame.plus_x, frame.pos_y)
        for matrix in frame.bones:
            writer.write(_MATRIX, *matrix)

    if frm.version == VERSION_1_1:
        pos_z = list(frm.pos_z) + [0.0] * (len(frm.frames) - len(frm.pos_z))
        writer.write(f'{len(frm.frames)}f', *pos_z)
    return writer.getvalue()


#########################
# SCENE CONVERSION
#########################

def decode_frm(data: bytes, name: str = "animation") -> Scene:
    """
    Decode FRM bytes into an animation-only Scene.

    Args:
        data: Complete file contents
        name: Clip name (usually the file stem)

    Returns:
        Scene with an empty mesh, no skeleton and one AnimationClip

    Raises:
        ParseError: Malformed input or a degenerate bone matrix
    """
    frm = read_frm(data)
    times = [f / FRAME_RATE for f in range(len(frm.frames))]

    rotation_tracks = []
    for bone in range(frm.bone_count):
        rotations = []
        for frame_index, frame in enumerate(frm.frames):
            try:
                rotations.append(_matrix_to_rotation(frame.bones[bone]))
            except ValueError as e:
                raise ParseError(f"FRM frame {frame_index}, bone {bone}: {e}") from e
        rotation_tracks.append(RotationTrack(
            joint_index=bone + 1,
            times=list(times),
            rotations=rotations,
            metadata={"frm_matrices": [list(frame.bones[bone]) for frame in frm.frames]},
        ))

    translations = []
    x = z = 0.0
    for frame_index, frame in enumerate(frm.frames):
        x += frame.plus_x
        if frm.pos_z:
            z += frm.pos_z[frame_index]
        translations.append([x, frame.pos_y, z])

    clip = AnimationClip(
        name=name,
        rotation_tracks=rotation_tracks,
        translation_track=TranslationTrack(times=list(times), translations=translations),
        metadata={
            "frm": {
                "version": frm.version,
                "options": [frame.option for frame in frm.frames],
                "plus_x": [frame.plus_x for frame in frm.frames],
                "pos_z": list(frm.pos_z),
            }
        },
    )
    logger.debug(f"Decoded FRM v{frm.version}: {len(frm.frames)} frames, {frm.bone_count} bones")
    return Scene(animation=clip)


def encode_frm(scene: Scene) -> bytes:
    """
    Encode a Scene's animation clip as FRM bytes.

    Tracks are resampled to 55 FPS (slerp for rotations, linear for the
    root translation, clamped at the ends). Keys already on the frame grid
    are used as-is.

    Args:
        scene: Scene with an animation clip; the skeleton, when present,
            decides the bone count

    Returns:
        FRM file contents

    Raises:
        EncodeError: No clip, invalid scene, a track with no bone in the
            skeleton, or counts beyond the format's limits
    """
    clip = scene.animation
    if clip is None:
        raise EncodeError("Scene has no animation clip to encode as FRM")
    try:
        scene.validate()
    except StructuralError as e:
        raise EncodeError(f"Cannot encode invalid scene as FRM: {e}") from e

    if scene.skeleton is not None:
        bone_count = scene.skeleton.joint_count - 1
        for track in clip.rotation_tracks:
            if track.joint_index > bone_count:
                raise EncodeError(
                    f"Rotation track for joint {track.joint_index} has no bone in the "
                    f"{scene.skeleton.joint_count}-joint skeleton; reconcile the animation first"
                )
    else:
        bone_count = max((track.joint_index for track in clip.rotation_tracks), default=0)

    frame_count = _frame_count(clip)
    raw = (clip.metadata or {}).get("frm") or {}
    version = _pick_version(raw, clip, frame_count, bone_count)
    sample_times = [f / FRAME_RATE for f in range(frame_count)]

    bone_columns = []
    for joint_index in range(1, bone_count + 1):
        track = clip.track_for(joint_index)
        bone_columns.append(_encode_track(track, sample_times))

    translations = _sample_translations(clip.translation_track, sample_times)
    xs = [t[0] for t in translations]
    zs = [t[2] for t in translations]
    plus_x = _deltas(xs, raw.get("plus_x"))
    pos_z = _deltas(zs, raw.get("pos_z"))

    options = raw.get("options")
    if not isinstance(options, list) or len(options) != frame_count:
        options = [0] * frame_count

    frames = []
    for f in range(frame_count):
        frames.append(FrmFrame(
            option=int(options[f]),
            plus_x=plus_x[f],
            pos_y=translations[f][1],
            bones=[column[f] for column in bone_columns],
        ))

    frm = FrmFile(
        version=version,
        frames=frames,
        pos_z=pos_z if version == VERSION_1_1 else [],
        bone_count=bone_count,
    )
    return write_frm(frm)


def _matrix_to_rotation(matrix: Sequence[float]) -> List[float]:
    """Row-vector matrix (16 floats, row-major) to quaternion [w, x, y, z]."""
    stored = np.asarray(matrix, dtype=np.float64).reshape(4, 4)
    return matrix_to_quaternion(stored[:3, :3].T)


def _rotation_to_matrix(quat: Sequence[float]) -> Tuple[float, ...]:
    stored = np.eye(4)
    stored[:3, :3] = quaternion_to_matrix(quat).T
    return tuple(float(v) for v in stored.flatten())


def _frame_count(clip: AnimationClip) -> int:
    has_keys = any(track.times for track in clip.rotation_tracks) or bool(clip.translation_track.times)
    if not has_keys:
        return 0
    return int(round(clip.duration * FRAME_RATE)) + 1


def _pick_version(raw: Dict[str, Any], clip: AnimationClip, frame_count: int, bone_count: int) -> str:
    version = raw.get("version") if raw.get("version") in (VERSION_1_0, VERSION_1_1) else VERSION_1_1
    if version == VERSION_1_0:
        has_z = any(t[2] != 0.0 for t in clip.translation_track.translations)
        if has_z or frame_count > MAX_U8 or bone_count > MAX_U8:
            logger.info("Writing FRM v1.1: the animation does not fit v1.0")
            version = VERSION_1_1
    if frame_count > MAX_U16 or bone_count > MAX_U16:
        raise EncodeError(f"FRM supports at most {MAX_U16} frames and bones")
    return version


def _encode_track(track: Optional[RotationTrack], sample_times: List[float]) -> List[Tuple[float, ...]]:
    """One matrix per frame for a joint, reusing raw matrices where still valid."""
    if track is None or not track.rotations:
        return [_IDENTITY_MATRIX] * len(sample_times)

    if list(track.times) == sample_times:
        rotations = track.rotations
        raw_matrices = (track.metadata or {}).get("frm_matrices")
        if not isinstance(raw_matrices, list) or len(raw_matrices) != len(rotations):
            raw_matrices = None
    else:
        rotations = slerp_quaternions(track.times, track.rotations, sample_times)
        raw_matrices = None

    matrices = []
    for f, rotation in enumerate(rotations):
        if raw_matrices is not None and _raw_matrix_matches(raw_matrices[f], rotation):
            matrices.append(tuple(float(v) for v in raw_matrices[f]))
        else:
            matrices.append(_rotation_to_matrix(rotation))
    return matrices


def _raw_matrix_matches(matrix: Any, rotation: Sequence[float]) -> bool:
    if not isinstance(matrix, list) or len(matrix) != 16:
        return False
    try:
        return _matrix_to_rotation(matrix) == list(rotation)
    except ValueError:
        return False


def _sample_translations(track: TranslationTrack, sample_times: List[float]) -> List[List[float]]:
    if not track.translations:
        return [[0.0, 0.0, 0.0] for _ in sample_times]
    if list(track.times) == sample_times:
        return [list(t) for t in track.translations]

    values = np.asarray(track.translations, dtype=np.float64)
    times = np.asarray(track.times, dtype=np.float64)
    # np.interp clamps to the end values outside the keyed range
    columns = [np.interp(sample_times, times, values[:, axis]) for axis in range(3)]
    return [[float(columns[axis][f]) for axis in range(3)] for f in range(len(sample_times))]


def _deltas(values: List[float], raw: Any) -> List[float]:
    """Per-frame deltas of an accumulated axis, preferring the recorded raw deltas."""
    if isinstance(raw, list) and len(raw) == len(values):
        total = 0.0
        matches = True
        for delta, expected in zip(raw, values):
            total += delta
            if total != expected:
                matches = False
                break
        if matches:
            return [float(d) for d in raw]

    deltas = []
    previous = 0.0
    for value in values:
        deltas.append(value - previous)
        previous = value
    return deltas
