"""
Byte-level builders for small synthetic P3M/FRM files used across the tests.

Values are chosen to be exactly representable as float32 so that decoded
positions can be compared with ==.
"""
import struct
from typing import List, Optional, Sequence, Tuple

import numpy as np

from chaseconv.schema.scene import Joint, Mesh, Scene, Skeleton, Vertex, joint_name

P3M_HEADER = b"Perfact 3D Model (Ver 0.5)\x00"
FRM_HEADER = b"Frm Ver 1.1\x00"
NO_BONE = 255
IDENTITY_MATRIX = [float(v) for v in np.eye(4).flatten()]


def _slots(children: Sequence[int]) -> List[int]:
    return list(children) + [NO_BONE] * (10 - len(children))


def create_p3m_bytes(
    position_bones: Sequence[Tuple[Sequence[float], Sequence[int]]],
    angle_bones: Sequence[Sequence[int]],
    vertices: Sequence[Tuple[Sequence[float], int, Sequence[float], Sequence[float]]],
    faces: Sequence[Tuple[int, int, int]],
    texture: bytes = b"knight.dds",
) -> bytes:
    """
    Assemble a P3M file.

    Args:
        position_bones: (position, angle bone children) per position bone
        angle_bones: position bone children per angle bone
        vertices: (bone-relative position, bone index, normal, uv) per vertex
        faces: Vertex index triples
        texture: Texture file name
    """
    out = bytearray(P3M_HEADER)
    out += struct.pack('<BB', len(position_bones), len(angle_bones))
    for position, children in position_bones:
        out += struct.pack('<3f10B2s', *position, *_slots(children), b'\xff\xff')
    for children in angle_bones:
        out += struct.pack('<3ff10B2s', 0.0, 0.0, 0.0, 0.0, *_slots(children), b'\xff\xff')

    out += struct.pack('<HH', len(vertices), len(faces))
    out += texture + b'\x00' * (260 - len(texture))
    for face in faces:
        out += struct.pack('<3H', *face)
    for position, bone, normal, uv in vertices:
        out += struct.pack('<3ffB3s3f2f', *position, 1.0, bone, bytes([bone, NO_BONE, NO_BONE]), *normal, *uv)
    for position, bone, normal, uv in vertices:
        out += struct.pack('<3f3f2f', *position, *normal, *uv)
    return bytes(out)


def create_simple_p3m() -> bytes:
    """
    Two-bone arm: bone_1 at (0, 1, 0) under the root, bone_2 at (0, 0.5, 0)
    under bone_1. Three vertices: one on each bone and one with no bone.
    """
    return create_p3m_bytes(
        position_bones=[((0.0, 1.0, 0.0), [0]), ((0.0, 0.5, 0.0), [1])],
        angle_bones=[[1], []],
        vertices=[
            ((0.5, 0.0, 0.0), 2, (0.0, 0.0, 1.0), (0.0, 0.0)),
            ((0.0, 0.25, 0.0), 3, (0.0, 0.0, 1.0), (1.0, 0.0)),
            ((1.0, 0.0, 0.0), NO_BONE, (0.0, 0.0, 1.0), (0.5, 1.0)),
        ],
        faces=[(0, 1, 2)],
    )


def create_chain_p3m(bone_count: int) -> bytes:
    """A straight chain of `bone_count` bones, each 1 unit above its parent."""
    position_bones = [((0.0, 1.0, 0.0), [i]) for i in range(bone_count)]
    angle_bones = [[i + 1] if i + 1 < bone_count else [] for i in range(bone_count)]
    first_bone = bone_count
    vertices = [
        ((0.0, 0.0, 0.0), first_bone, (0.0, 1.0, 0.0), (0.0, 0.0)),
        ((1.0, 0.0, 0.0), first_bone, (0.0, 1.0, 0.0), (1.0, 0.0)),
        ((0.0, 0.0, 1.0), first_bone, (0.0, 1.0, 0.0), (0.0, 1.0)),
    ]
    return create_p3m_bytes(position_bones, angle_bones, vertices, faces=[(0, 1, 2)])


def create_frm_bytes(
    frames: Sequence[Tuple[int, float, float, Sequence[Sequence[float]]]],
    version: str = "1.1",
    pos_z: Optional[Sequence[float]] = None,
) -> bytes:
    """
    Assemble an FRM file.

    Args:
        frames: (option, plus_x, pos_y, [16-float matrix per bone]) per frame
        version: "1.0" or "1.1"
        pos_z: Per-frame z deltas (v1.1 only; zeros when omitted)
    """
    bone_count = len(frames[0][3]) if frames else 0
    out = bytearray()
    if version == "1.1":
        out += FRM_HEADER
        out += struct.pack('<HH', len(frames), bone_count)
    else:
        out += struct.pack('<BB', len(frames), bone_count)

    for option, plus_x, pos_y, matrices in frames:
        out += struct.pack('<Bff', option, plus_x, pos_y)
        for matrix in matrices:
            out += struct.pack('<16f', *matrix)

    if version == "1.1":
        z = list(pos_z) if pos_z is not None else [0.0] * len(frames)
        out += struct.pack(f'<{len(frames)}f', *z)
    return bytes(out)


def rotation_z_matrix(degrees: float) -> List[float]:
    """Row-vector (stored) matrix for a rotation about Z."""
    angle = np.radians(degrees)
    c, s = np.cos(angle), np.sin(angle)
    column_vector = np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
    stored = np.eye(4)
    stored[:3, :3] = column_vector.T
    return [float(v) for v in stored.flatten()]


def create_identity_frm(bone_count: int, frame_count: int = 3, version: str = "1.1") -> bytes:
    """An FRM where every bone holds the identity and the root walks along x."""
    frames = [(0, 0.5 if f else 0.0, 1.0, [IDENTITY_MATRIX] * bone_count) for f in range(frame_count)]
    return create_frm_bytes(frames, version=version)


def create_scene(bone_count: int = 2) -> Scene:
    """A hand-built chain Scene with one triangle bound to the first bone."""
    joints = [Joint(name="root")]
    for index in range(1, bone_count + 1):
        joints.append(Joint(name=joint_name(index), parent=index - 1, translation=[0.0, 1.0, 0.0]))
    mesh = Mesh(
        name="triangle",
        vertices=[
            Vertex(position=[0.0, 1.0, 0.0], normal=[0.0, 0.0, 1.0], uv=[0.0, 0.0], joints=[1], weights=[1.0]),
            Vertex(position=[1.0, 1.0, 0.0], normal=[0.0, 0.0, 1.0], uv=[1.0, 0.0], joints=[1], weights=[1.0]),
            Vertex(position=[0.0, 2.0, 0.0], normal=[0.0, 0.0, 1.0], uv=[0.0, 1.0], joints=[1], weights=[1.0]),
        ],
        indices=[0, 1, 2],
    )
    return Scene(mesh=mesh, skeleton=Skeleton(joints=joints))


def write_file(directory: str, name: str, data: bytes) -> str:
    path = f"{directory}/{name}"
    with open(path, 'wb') as f:
        f.write(data)
    return path
