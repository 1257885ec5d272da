"""
P3M (GrandChase model) ↔ Scene codec

P3M stores skinned geometry, the bone hierarchy and the bind pose. The
skeleton is split across two bone lists:
- Position bones carry a translation and list the angle bones it applies to
- Angle bones are the actual joints; they list the position bones below them

Scene mapping:
- Joint 0 is a synthetic "root" at the origin
- Angle bone i becomes joint i + 1 ("bone_{i+1}")
- Skin vertex bone indices are offset by the position bone count; 255 means
  "no bone" and maps to the root
- Skin vertex positions are stored relative to the bone's world bind
  translation; the Scene holds them in model space

Round-trips:
The raw bone and vertex blocks are kept in `scene.metadata["p3m"]`. On
encode they are reused while the Scene still decodes to the same values, so
an untouched file is reproduced byte for byte. Regenerated blocks use the
canonical layout (one position bone per joint, 0xFFFF padding, extra vertex
bone bytes written as (bone, 0xFF, 0xFF)).
"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from chaseconv.exceptions import EncodeError, ParseError, StructuralError
from chaseconv.schema.scene import Joint, Mesh, Scene, Skeleton, Vertex, is_identity_rotation, joint_name
from chaseconv.converters.grandchase.binary_utils import (
    BinaryReader,
    BinaryWriter,
    pack_c_string,
    read_c_string,
)
from chaseconv.converters.reconcile import joint_world_translations

logger = logging.getLogger(__name__)

# The typo is intentional and follows the string used in the official assets
VERSION_HEADER = b"Perfact 3D Model (Ver 0.5)\x00"
HEADER_SIGNATURE = b"Perfact 3D Model"
INVALID_BONE_INDEX = 255
MAX_BONE_CHILDREN = 10
TEXTURE_NAME_SIZE = 260
PADDING = b"\xff\xff"
MAX_CANONICAL_BONES = 127
MAX_U16 = 0xFFFF

_POSITION_BONE = '3f10B2s'
_ANGLE_BONE = '3ff10B2s'
_SKIN_VERTEX = '3ffB3s3f2f'
_MESH_VERTEX = '3f3f2f'


def _pad_children(children: List[int]) -> List[int]:
    return list(children) + [INVALID_BONE_INDEX] * (MAX_BONE_CHILDREN - len(children))


@dataclass
class PositionBone:
    """Translation applied to a set of child angle bones."""
    position: Tuple[float, float, float]
    slots: List[int] = field(default_factory=lambda: [INVALID_BONE_INDEX] * MAX_BONE_CHILDREN)
    padding: bytes = PADDING

    @property
    def children(self) -> List[int]:
        return [c for c in self.slots if c != INVALID_BONE_INDEX]


@dataclass
class AngleBone:
    """Rotation node of the skeleton; its slots list position bones."""
    slots: List[int] = field(default_factory=lambda: [INVALID_BONE_INDEX] * MAX_BONE_CHILDREN)
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    scale: float = 0.0
    padding: bytes = PADDING

    @property
    def children(self) -> List[int]:
        return [c for c in self.slots if c != INVALID_BONE_INDEX]


@dataclass
class SkinVertex:
    position: Tuple[float, float, float]
    bone_index: int
    normal: Tuple[float, float, float]
    uv: Tuple[float, float]
    weight: float = 1.0
    extra: Optional[bytes] = None


@dataclass
class MeshVertex:
    position: Tuple[float, float, float]
    normal: Tuple[float, float, float]
    uv: Tuple[float, float]


@dataclass
class P3mFile:
    """Raw P3M contents, field for field."""
    header: bytes = VERSION_HEADER
    position_bones: List[PositionBone] = field(default_factory=list)
    angle_bones: List[AngleBone] = field(default_factory=list)
    texture: bytes = b"\x00" * TEXTURE_NAME_SIZE
    faces: List[Tuple[int, int, int]] = field(default_factory=list)
    skin_vertices: List[SkinVertex] = field(default_factory=list)
    mesh_vertices: List[MeshVertex] = field(default_factory=list)
    # Raw byte slices of the variable blocks, filled by read_p3m()
    blocks: Dict[str, bytes] = field(default_factory=dict)


#########################
# RAW READ/WRITE
#########################

def read_p3m(data: bytes) -> P3mFile:
    """
    Parse P3M bytes into raw records.

    Args:
        data: Complete file contents

    Returns:
        P3mFile with every field preserved

    Raises:
        ParseError: Bad header, truncated block or trailing bytes
    """
    reader = BinaryReader(data, "P3M")
    header = reader.read_bytes(len(VERSION_HEADER), "version header")
    if not header.startswith(HEADER_SIGNATURE):
        raise ParseError("Not a P3M file: bad version header", offset=0)

    position_count, angle_count = reader.read('BB', "bone counts")
    start = reader.pos
    position_bones, angle_bones = _read_bones(reader, position_count, angle_count)
    bones_block = data[start:reader.pos]

    vertex_count, face_count = reader.read('HH', "geometry counts")
    texture = reader.read_bytes(TEXTURE_NAME_SIZE, "texture name")
    faces = [reader.read('3H', "face block") for _ in range(face_count)]

    start = reader.pos
    skin_vertices = _read_skin_vertices(reader, vertex_count)
    skin_block = data[start:reader.pos]

    start = reader.pos
    mesh_vertices = _read_mesh_vertices(reader, vertex_count)
    mesh_block = data[start:reader.pos]
    reader.expect_end()

    return P3mFile(
        header=header,
        position_bones=position_bones,
        angle_bones=angle_bones,
        texture=texture,
        faces=faces,
        skin_vertices=skin_vertices,
        mesh_vertices=mesh_vertices,
        blocks={"bones": bytes(bones_block), "skin_vertices": bytes(skin_block), "mesh_vertices": bytes(mesh_block)},
    )


def write_p3m(p3m: P3mFile) -> bytes:
    """Serialize raw records back to P3M bytes."""
    writer = BinaryWriter("P3M")
    writer.write_bytes(p3m.header)
    writer.write('BB', len(p3m.position_bones), len(p3m.angle_bones))
    for bone in p3m.position_bones:
        writer.write(_POSITION_BONE, *bone.position, *bone.slots, bone.padding)
    for bone in p3m.angle_bones:
        writer.write(_ANGLE_BONE, *bone.position, bone.scale, *bone.slots, bone.padding)

    writer.write('HH', len(p3m.skin_vertices), len(p3m.faces))
    writer.write_bytes(p3m.texture)
    for face in p3m.faces:
        writer.write('3H', *face)

    for vertex in p3m.skin_vertices:
        extra = vertex.extra
        if extra is None:
            extra = bytes([vertex.bone_index, INVALID_BONE_INDEX, INVALID_BONE_INDEX])
        writer.write(_SKIN_VERTEX, *vertex.position, vertex.weight, vertex.bone_index, extra,
                     *vertex.normal, *vertex.uv)
    for vertex in p3m.mesh_vertices:
        writer.write(_MESH_VERTEX, *vertex.position, *vertex.normal, *vertex.uv)
    return writer.getvalue()


def _read_bones(reader: BinaryReader, position_count: int, angle_count: int):
    position_bones = []
    for _ in range(position_count):
        values = reader.read(_POSITION_BONE, "position bone block")
        position_bones.append(PositionBone(position=tuple(values[0:3]), slots=list(values[3:13]), padding=values[13]))

    angle_bones = []
    for _ in range(angle_count):
        values = reader.read(_ANGLE_BONE, "angle bone block")
        angle_bones.append(AngleBone(
            position=tuple(values[0:3]), scale=values[3], slots=list(values[4:14]), padding=values[14],
        ))
    return position_bones, angle_bones


def _read_skin_vertices(reader: BinaryReader, count: int) -> List[SkinVertex]:
    vertices = []
    for _ in range(count):
        values = reader.read(_SKIN_VERTEX, "skin vertex block")
        vertices.append(SkinVertex(
            position=tuple(values[0:3]),
            weight=values[3],
            bone_index=values[4],
            extra=values[5],
            normal=tuple(values[6:9]),
            uv=tuple(values[9:11]),
        ))
    return vertices


def _read_mesh_vertices(reader: BinaryReader, count: int) -> List[MeshVertex]:
    vertices = []
    for _ in range(count):
        values = reader.read(_MESH_VERTEX, "mesh vertex block")
        vertices.append(MeshVertex(position=tuple(values[0:3]), normal=tuple(values[3:6]), uv=tuple(values[6:8])))
    return vertices


#########################
# SCENE CONVERSION
#########################

def decode_p3m(data: bytes, name: str = "") -> Scene:
    """
    Decode P3M bytes into a Scene.

    Args:
        data: Complete file contents
        name: Mesh name (usually the file stem)

    Returns:
        Scene with mesh and skeleton; no animation

    Raises:
        ParseError: Malformed or truncated input
        StructuralError: Bone hierarchy violates Scene invariants
    """
    p3m = read_p3m(data)
    skeleton = _derive_skeleton(p3m.position_bones, p3m.angle_bones)
    Scene(skeleton=skeleton).validate()

    vertex_count = len(p3m.skin_vertices)
    for face_index, face in enumerate(p3m.faces):
        for index in face:
            if index >= vertex_count:
                raise ParseError(f"P3M face {face_index} references vertex {index}, but there are only {vertex_count}")

    vertices = _decode_vertices(p3m.skin_vertices, skeleton, len(p3m.position_bones))
    mesh = Mesh(name=name, vertices=vertices, indices=[i for face in p3m.faces for i in face])

    metadata = {
        "p3m": {
            "header": base64.b64encode(p3m.header).decode('ascii'),
            "texture": base64.b64encode(p3m.texture).decode('ascii'),
            "texture_name": read_c_string(p3m.texture),
            "position_bone_count": len(p3m.position_bones),
            "angle_bone_count": len(p3m.angle_bones),
            "bones": base64.b64encode(p3m.blocks["bones"]).decode('ascii'),
            "skin_vertices": base64.b64encode(p3m.blocks["skin_vertices"]).decode('ascii'),
            "mesh_vertices": base64.b64encode(p3m.blocks["mesh_vertices"]).decode('ascii'),
        }
    }

    logger.debug(
        f"Decoded P3M: {skeleton.joint_count} joints, {vertex_count} vertices, {len(p3m.faces)} faces"
    )
    return Scene(mesh=mesh, skeleton=skeleton, metadata=metadata)


def encode_p3m(scene: Scene) -> bytes:
    """
    Encode a Scene as P3M bytes.

    Args:
        scene: Scene with a skeleton (animation is ignored; see encode_frm)

    Returns:
        P3M file contents

    Raises:
        EncodeError: Scene is invalid or exceeds what P3M can store
    """
    try:
        scene.validate()
    except StructuralError as e:
        raise EncodeError(f"Cannot encode invalid scene as P3M: {e}") from e

    skeleton = scene.skeleton
    if skeleton is None:
        raise EncodeError("P3M requires a skeleton")
    if not is_identity_rotation(skeleton.joints[0].rotation):
        raise EncodeError("P3M cannot store a bind rotation on the root joint")

    mesh = scene.mesh
    if len(mesh.vertices) > MAX_U16:
        raise EncodeError(f"P3M supports at most {MAX_U16} vertices, scene has {len(mesh.vertices)}")
    if mesh.triangle_count > MAX_U16:
        raise EncodeError(f"P3M supports at most {MAX_U16} faces, scene has {mesh.triangle_count}")

    raw = (scene.metadata or {}).get("p3m") or {}

    reused = _reuse_bones(raw, skeleton)
    if reused is not None:
        position_bones, angle_bones = reused
    else:
        position_bones, angle_bones = _build_bones(skeleton)

    vertices = None
    if reused is not None:
        vertices = _reuse_vertices(raw, mesh, skeleton, len(position_bones))
    if vertices is None:
        vertices = _build_vertices(mesh, skeleton, len(position_bones))
    skin_vertices, mesh_vertices = vertices

    p3m = P3mFile(
        header=_raw_bytes(raw, "header", len(VERSION_HEADER)) or VERSION_HEADER,
        position_bones=position_bones,
        angle_bones=angle_bones,
        texture=_texture_field(raw),
        faces=[tuple(mesh.indices[i:i + 3]) for i in range(0, len(mesh.indices), 3)],
        skin_vertices=skin_vertices,
        mesh_vertices=mesh_vertices,
    )
    return write_p3m(p3m)


def _derive_skeleton(position_bones: List[PositionBone], angle_bones: List[AngleBone]) -> Skeleton:
    """Squash position/angle bones into one joint list behind a synthetic root."""
    angle_count = len(angle_bones)
    translations: List[Tuple[float, float, float]] = [(0.0, 0.0, 0.0)] * angle_count
    owners: List[Optional[int]] = [None] * angle_count

    for p_index, p_bone in enumerate(position_bones):
        for child in p_bone.children:
            if child >= angle_count:
                raise ParseError(f"P3M position bone {p_index} lists missing angle bone {child}")
            if owners[child] is not None:
                raise ParseError(
                    f"P3M angle bone {child} is listed by position bones {owners[child]} and {p_index}"
                )
            owners[child] = p_index
            translations[child] = p_bone.position

    parents: List[Optional[int]] = [None] * angle_count
    for a_index, a_bone in enumerate(angle_bones):
        for p_child in a_bone.children:
            if p_child >= len(position_bones):
                raise ParseError(f"P3M angle bone {a_index} lists missing position bone {p_child}")
            for child in position_bones[p_child].children:
                if parents[child] is not None:
                    raise ParseError(f"P3M angle bone {child} has more than one parent")
                parents[child] = a_index

    joints = [Joint(name=joint_name(0))]
    for index in range(angle_count):
        parent = parents[index] + 1 if parents[index] is not None else 0
        joints.append(Joint(name=joint_name(index + 1), parent=parent, translation=list(translations[index])))
    return Skeleton(joints=joints)


def _decode_vertices(skin_vertices: List[SkinVertex], skeleton: Skeleton, position_count: int) -> List[Vertex]:
    offsets = joint_world_translations(skeleton)
    angle_count = skeleton.joint_count - 1
    vertices = []
    for vertex_index, raw in enumerate(skin_vertices):
        if raw.bone_index == INVALID_BONE_INDEX:
            joint = 0
        else:
            angle = raw.bone_index - position_count
            if not 0 <= angle < angle_count:
                raise ParseError(
                    f"P3M skin vertex {vertex_index} references bone {raw.bone_index}; "
                    f"angle bones are {position_count}..{position_count + angle_count - 1}"
                )
            joint = angle + 1
        position = np.asarray(raw.position, dtype=np.float32) + offsets[joint]
        vertices.append(Vertex(
            position=[float(c) for c in position],
            normal=list(raw.normal),
            uv=list(raw.uv),
            joints=[joint],
            weights=[1.0],
        ))
    return vertices


def _build_bones(skeleton: Skeleton) -> Tuple[List[PositionBone], List[AngleBone]]:
    """Canonical layout: position bone i holds angle bone i alone."""
    bone_count = skeleton.joint_count - 1
    if bone_count > MAX_CANONICAL_BONES:
        raise EncodeError(f"P3M supports at most {MAX_CANONICAL_BONES} bones, skeleton has {bone_count}")

    root_translation = skeleton.joints[0].translation
    position_bones = []
    angle_bones = []
    for index in range(1, skeleton.joint_count):
        joint = skeleton.joints[index]
        translation = list(joint.translation)
        if joint.parent == 0:
            # Root has no bone in P3M; fold its offset into the top-level bones
            translation = [translation[k] + root_translation[k] for k in range(3)]

        children = [child - 1 for child in skeleton.children_of(index)]
        if len(children) > MAX_BONE_CHILDREN:
            raise EncodeError(
                f"Joint '{joint.name}' has {len(children)} children; P3M allows {MAX_BONE_CHILDREN}"
            )
        position_bones.append(PositionBone(position=tuple(translation), slots=_pad_children([index - 1])))
        angle_bones.append(AngleBone(slots=_pad_children(children)))
    return position_bones, angle_bones


def _build_vertices(mesh: Mesh, skeleton: Skeleton, position_count: int):
    offsets = joint_world_translations(skeleton)
    skin_vertices = []
    mesh_vertices = []
    reduced = 0
    for vertex in mesh.vertices:
        if sum(1 for w in vertex.weights if w > 0) > 1:
            reduced += 1
        joint = vertex.dominant_joint()
        if joint is None or joint == 0:
            bone_index = INVALID_BONE_INDEX
            position = list(vertex.position)
        else:
            bone_index = position_count + joint - 1
            relative = np.asarray(vertex.position, dtype=np.float32) - offsets[joint]
            position = [float(c) for c in relative]

        skin_vertices.append(SkinVertex(
            position=tuple(position), bone_index=bone_index,
            normal=tuple(vertex.normal), uv=tuple(vertex.uv),
        ))
        mesh_vertices.append(MeshVertex(
            position=tuple(vertex.position), normal=tuple(vertex.normal), uv=tuple(vertex.uv),
        ))

    if reduced:
        logger.warning(f"{reduced} vertices have several joint influences; P3M keeps only the strongest")
    return skin_vertices, mesh_vertices


#########################
# RAW BLOCK REUSE
#########################

def _raw_bytes(raw: Dict[str, Any], key: str, size: Optional[int] = None) -> Optional[bytes]:
    value = raw.get(key)
    if not isinstance(value, str):
        return None
    try:
        decoded = base64.b64decode(value, validate=True)
    except ValueError:
        logger.debug(f"Ignoring malformed P3M metadata '{key}'")
        return None
    if size is not None and len(decoded) != size:
        return None
    return decoded


def _texture_field(raw: Dict[str, Any]) -> bytes:
    texture = _raw_bytes(raw, "texture", TEXTURE_NAME_SIZE)
    name = raw.get("texture_name")
    if texture is not None and (name is None or read_c_string(texture) == name):
        return texture
    return pack_c_string(name or "", TEXTURE_NAME_SIZE)


def _reuse_bones(raw: Dict[str, Any], skeleton: Skeleton):
    """Raw bone records if they still describe exactly this skeleton."""
    block = _raw_bytes(raw, "bones")
    if block is None:
        return None
    try:
        reader = BinaryReader(block, "P3M metadata")
        bones = _read_bones(reader, int(raw.get("position_bone_count", 0)), int(raw.get("angle_bone_count", 0)))
        reader.expect_end()
        derived = _derive_skeleton(*bones)
    except ParseError as e:
        logger.debug(f"Ignoring P3M bone metadata: {e}")
        return None
    if derived.joints != skeleton.joints:
        return None
    return bones


def _reuse_vertices(raw: Dict[str, Any], mesh: Mesh, skeleton: Skeleton, position_count: int):
    """Raw vertex records if they still decode to exactly this mesh."""
    skin_block = _raw_bytes(raw, "skin_vertices")
    mesh_block = _raw_bytes(raw, "mesh_vertices")
    if skin_block is None or mesh_block is None:
        return None
    count = len(mesh.vertices)
    try:
        reader = BinaryReader(skin_block, "P3M metadata")
        skin_vertices = _read_skin_vertices(reader, count)
        reader.expect_end()
        reader = BinaryReader(mesh_block, "P3M metadata")
        mesh_vertices = _read_mesh_vertices(reader, count)
        reader.expect_end()
        decoded = _decode_vertices(skin_vertices, skeleton, position_count)
    except ParseError as e:
        logger.debug(f"Ignoring P3M vertex metadata: {e}")
        return None
    if decoded != list(mesh.vertices):
        return None
    return skin_vertices, mesh_vertices
