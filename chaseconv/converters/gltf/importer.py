"""
GLTF → Scene Importer

Loads GLTF 2.0 documents (JSON or GLB) with pygltflib and decodes accessor
data with numpy. Only the subset of GLTF the game can use is read:

- The FIRST skin defines the skeleton. Its joint nodes must be named "root"
  and "bone_1".."bone_{n-1}" with no gaps; the name, not the node order,
  decides the joint index.
- Every non-root joint must have an identity bind rotation (checked against
  the node transform and, when present, the inverse bind matrices).
- The mesh is taken from the first node using the skin (falling back to the
  first mesh). Triangle primitives are concatenated into one vertex list.
- The first animation becomes the clip: non-root joint rotations and the
  root translation. Scale channels and everything else are ignored.

Coordinates are read in GLTF space and mirrored into game space at the end
(see coordinate_utils).
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
from pydantic import ValidationError

from chaseconv.exceptions import AssetImportError, MissingSkinError, NamingViolation, ParseError
from chaseconv.schema.scene import (
    AnimationClip,
    Joint,
    Mesh,
    RotationTrack,
    Scene,
    Skeleton,
    TranslationTrack,
    Vertex,
    joint_index_from_name,
    joint_name,
)
from chaseconv.converters.coordinate_utils import mirror_scene
from chaseconv.converters.reconcile import enforce_bind_pose
from chaseconv.converters.rotation_utils import matrix_to_quaternion
from chaseconv.converters.gltf.container import load_buffers, load_glb, load_gltf_json
from chaseconv.converters.gltf.format_utils import get_attributes, get_field, get_list_field, resolve, safe_iterate

logger = logging.getLogger(__name__)

# componentType -> little-endian numpy dtype
COMPONENT_DTYPES = {
    5120: "<i1",  # BYTE
    5121: "<u1",  # UNSIGNED_BYTE
    5122: "<i2",  # SHORT
    5123: "<u2",  # UNSIGNED_SHORT
    5125: "<u4",  # UNSIGNED_INT
    5126: "<f4",  # FLOAT
}

# Divisors for normalized integer accessors
NORMALIZED_DIVISORS = {
    5120: 127.0,
    5121: 255.0,
    5122: 32767.0,
    5123: 65535.0,
}

TYPE_SIZES = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}

TRIANGLES = 4


def import_glb(data: bytes, base_dir: Optional[str] = None) -> Scene:
    """
    Import a binary GLB container.

    Args:
        data: GLB file contents
        base_dir: Directory for any external buffers the GLB references

    Returns:
        Validated Scene in game coordinates
    """
    gltf = load_glb(data, base_dir)
    return decode_gltf(gltf, load_buffers(gltf))


def import_gltf(payload: Union[str, bytes], base_dir: Optional[str] = None) -> Scene:
    """
    Import a JSON GLTF document.

    Args:
        payload: GLTF JSON text, or a path to a .gltf file
        base_dir: Directory external buffer URIs are relative to (defaults to
            the file's directory when a path is given)

    Returns:
        Validated Scene in game coordinates
    """
    if isinstance(payload, str) and not payload.lstrip().startswith("{") and os.path.exists(payload):
        if base_dir is None:
            base_dir = os.path.dirname(os.path.abspath(payload))
        with open(payload, "rb") as f:
            payload = f.read()

    gltf = load_gltf_json(payload, base_dir)
    return decode_gltf(gltf, load_buffers(gltf))


def decode_gltf(document: Any, buffers: List[bytes]) -> Scene:
    """
    Decode a loaded GLTF document into a Scene.

    Args:
        document: pygltflib GLTF2, or the same document as a JSON dict
        buffers: Buffer contents, parallel to document["buffers"]

    Returns:
        Validated Scene in game coordinates

    Raises:
        ParseError: Malformed accessors or dangling references
        NamingViolation: Skin joints not named root/bone_{i} without gaps
        BindPoseViolation: Non-root joint with a bind rotation
        MissingSkinError: Skinned data without a usable skin
        AssetImportError: Non-triangle primitives
    """
    asset_version = get_field(get_field(document, "asset", {}), "version")
    if asset_version is not None and not str(asset_version).startswith("2"):
        raise ParseError(f"Unsupported GLTF version {asset_version}")

    skins = get_list_field(document, "skins")
    skeleton: Optional[Skeleton] = None
    node_to_joint: Dict[int, int] = {}

    try:
        if skins:
            if len(skins) > 1:
                logger.debug(f"Document has {len(skins)} skins; only the first is used")
            skeleton, node_to_joint = _read_skeleton(document, skins[0])
            inverse_binds = _read_inverse_binds(document, buffers, skins[0], node_to_joint)
            enforce_bind_pose(skeleton, inverse_binds)
            logger.debug(f"Read skeleton with {skeleton.joint_count} joints")

        mesh = _read_mesh(document, buffers, node_to_joint)
        animation = _read_animation(document, buffers, node_to_joint)
        texture_name = get_field(mesh.metadata, "texture_name")
        metadata = {"p3m": {"texture_name": texture_name}} if texture_name else None
        scene = Scene(mesh=mesh, skeleton=skeleton, animation=animation, metadata=metadata)
    except (ValidationError, TypeError, ValueError, AttributeError) as e:
        raise ParseError(f"Malformed GLTF content: {e}") from e

    scene = mirror_scene(scene)
    scene.validate()
    logger.info(
        f"Imported GLTF: {len(scene.mesh.vertices)} vertices, "
        f"{skeleton.joint_count if skeleton else 0} joints, "
        f"{len(animation.rotation_tracks) if animation else 0} rotation tracks"
    )
    return scene


#########################
# ACCESSORS
#########################

def read_accessor(document: Any, buffers: List[bytes], index: Any, referrer: str) -> np.ndarray:
    """
    Read an accessor into a (count, components) array.

    Float and normalized accessors are returned as float64, other integer
    accessors keep their integer dtype. Accessors without a bufferView read
    as zeros. Sparse substitution is applied when present.

    Raises:
        ParseError: Unknown component type/type, or data outside its buffer
    """
    accessor = resolve(document, "accessors", index, referrer)
    component_type = get_field(accessor, "componentType")
    if component_type not in COMPONENT_DTYPES:
        raise ParseError(f"Accessor {index} has unsupported componentType {component_type}")
    accessor_type = get_field(accessor, "type")
    if accessor_type not in TYPE_SIZES:
        raise ParseError(f"Accessor {index} has unsupported type {accessor_type}")

    dtype = np.dtype(COMPONENT_DTYPES[component_type])
    components = TYPE_SIZES[accessor_type]
    count = get_field(accessor, "count", 0)
    view_index = get_field(accessor, "bufferView")

    if view_index is None:
        data = np.zeros((count, components), dtype=dtype)
    else:
        data = _read_view(document, buffers, accessor, index, view_index, dtype, components, count)

    sparse = get_field(accessor, "sparse")
    if sparse is not None:
        _apply_sparse(document, buffers, sparse, data, index, dtype, components)

    if get_field(accessor, "normalized", False) and component_type in NORMALIZED_DIVISORS:
        data = np.maximum(data.astype(np.float64) / NORMALIZED_DIVISORS[component_type], -1.0)
    elif dtype.kind == "f":
        data = data.astype(np.float64)
    return data


def _view_bytes(document: Any, buffers: List[bytes], view_index: Any, referrer: str) -> Tuple[bytes, Optional[int]]:
    view = resolve(document, "bufferViews", view_index, referrer)
    buffer_index = get_field(view, "buffer")
    if not isinstance(buffer_index, int) or not 0 <= buffer_index < len(buffers):
        raise ParseError(f"Buffer view {view_index} references missing buffer {buffer_index}")
    buffer = buffers[buffer_index]
    start = get_field(view, "byteOffset", 0)
    length = get_field(view, "byteLength", 0)
    if start + length > len(buffer):
        raise ParseError(
            f"Buffer view {view_index} spans bytes {start}..{start + length} "
            f"of a {len(buffer)}-byte buffer"
        )
    return buffer[start:start + length], get_field(view, "byteStride")


def _read_view(document, buffers, accessor, index, view_index, dtype, components, count) -> np.ndarray:
    raw, stride = _view_bytes(document, buffers, view_index, f"Accessor {index}")
    element_size = dtype.itemsize * components
    stride = stride or element_size
    offset = get_field(accessor, "byteOffset", 0)

    if count == 0:
        return np.zeros((0, components), dtype=dtype)

    needed = offset + stride * (count - 1) + element_size
    if needed > len(raw):
        raise ParseError(
            f"Accessor {index} reads {needed} bytes from a {len(raw)}-byte buffer view"
        )

    if stride == element_size:
        data = np.frombuffer(raw, dtype=dtype, count=count * components, offset=offset)
        return data.reshape(count, components).copy()

    strided = np.ndarray(
        shape=(count, components),
        dtype=dtype,
        buffer=raw,
        offset=offset,
        strides=(stride, dtype.itemsize),
    )
    return strided.copy()


def _apply_sparse(document, buffers, sparse, data, index, dtype, components) -> None:
    sparse_count = get_field(sparse, "count", 0)
    sparse_indices = get_field(sparse, "indices", {})
    sparse_values = get_field(sparse, "values", {})

    index_type = get_field(sparse_indices, "componentType")
    if index_type not in (5121, 5123, 5125):
        raise ParseError(f"Accessor {index} has sparse indices of componentType {index_type}")
    index_dtype = np.dtype(COMPONENT_DTYPES[index_type])

    positions = _read_sparse_block(document, buffers, sparse_indices, index, index_dtype, 1, sparse_count)
    values = _read_sparse_block(document, buffers, sparse_values, index, dtype, components, sparse_count)
    positions = positions.reshape(-1).astype(np.int64)
    if len(positions) and (positions.max() >= len(data)):
        raise ParseError(f"Accessor {index} has sparse index {int(positions.max())} past its {len(data)} elements")
    data[positions] = values


def _read_sparse_block(document, buffers, block, index, dtype, components, count) -> np.ndarray:
    raw, _ = _view_bytes(document, buffers, get_field(block, "bufferView"), f"Sparse accessor {index}")
    offset = get_field(block, "byteOffset", 0)
    needed = offset + dtype.itemsize * components * count
    if needed > len(raw):
        raise ParseError(f"Sparse accessor {index} reads {needed} bytes from a {len(raw)}-byte buffer view")
    data = np.frombuffer(raw, dtype=dtype, count=count * components, offset=offset)
    return data.reshape(count, components).copy()


#########################
# SKELETON
#########################

def _node_transform(node: Any) -> Tuple[List[float], List[float]]:
    """Local (translation, rotation [w, x, y, z]) of a node; scale is dropped."""
    name = get_field(node, "name", "")
    matrix = get_field(node, "matrix")
    if matrix is not None:
        _check_length(matrix, 16, f"Node '{name}' matrix")
        # Column-major in GLTF
        m = np.asarray(matrix, dtype=np.float64).reshape(4, 4).T
        try:
            rotation = matrix_to_quaternion(m[:3, :3])
        except ValueError as e:
            raise ParseError(f"Node '{name}' has a degenerate matrix") from e
        return [float(c) for c in m[:3, 3]], rotation

    translation = get_field(node, "translation", [0.0, 0.0, 0.0])
    rotation = get_field(node, "rotation", [0.0, 0.0, 0.0, 1.0])
    _check_length(translation, 3, f"Node '{name}' translation")
    _check_length(rotation, 4, f"Node '{name}' rotation")
    x, y, z, w = (float(c) for c in rotation)
    return [float(c) for c in translation], [w, x, y, z]


def _check_length(value: Any, expected: int, what: str) -> None:
    if not isinstance(value, list) or len(value) != expected:
        raise ParseError(f"{what} must be a list of {expected} numbers, got {value!r}")


def _read_skeleton(document: Any, skin: Any) -> Tuple[Skeleton, Dict[int, int]]:
    """
    Build a Skeleton from a skin, indexing joints by name.

    Returns:
        Tuple of (skeleton, node index -> joint index)
    """
    nodes = get_list_field(document, "nodes")
    joint_nodes = get_list_field(skin, "joints")
    if not joint_nodes:
        raise NamingViolation("Skin has no joints; a 'root' joint is required", name=None, joint_index=0)

    node_to_joint: Dict[int, int] = {}
    used: Dict[int, int] = {}
    for node_index in joint_nodes:
        node = resolve(document, "nodes", node_index, "Skin")
        name = get_field(node, "name")
        joint_index = joint_index_from_name(name)
        if joint_index is None:
            raise NamingViolation(
                f"Joint node {node_index} is named '{name}'; joints must be named 'root' or 'bone_{{i}}'",
                name=name,
            )
        if joint_index in used:
            raise NamingViolation(
                f"Joint name '{name}' is used by nodes {used[joint_index]} and {node_index}",
                name=name, joint_index=joint_index,
            )
        used[joint_index] = node_index
        node_to_joint[node_index] = joint_index

    joint_count = len(used)
    missing = sorted(set(range(joint_count)) - set(used))
    if missing:
        raise NamingViolation(
            f"Skin has {joint_count} joints but '{joint_name(missing[0])}' is missing; "
            f"names must run root, bone_1..bone_{joint_count - 1} without gaps",
            name=joint_name(missing[0]), joint_index=missing[0],
        )

    parent_of: Dict[int, int] = {}
    for node_index, node in enumerate(nodes):
        for child in get_list_field(node, "children"):
            parent_of[child] = node_index

    joints: List[Optional[Joint]] = [None] * joint_count
    for node_index, joint_index in node_to_joint.items():
        node = nodes[node_index]
        parent_node = parent_of.get(node_index)
        parent = node_to_joint.get(parent_node) if parent_node is not None else None
        translation, rotation = _node_transform(node)
        joints[joint_index] = Joint(
            name=joint_name(joint_index),
            parent=parent,
            translation=translation,
            rotation=rotation,
        )

    return Skeleton(joints=joints), node_to_joint


def _read_inverse_binds(
    document: Any,
    buffers: List[bytes],
    skin: Any,
    node_to_joint: Dict[int, int],
) -> Optional[List[np.ndarray]]:
    """Inverse bind matrices reordered by joint index, or None if the skin has none."""
    accessor_index = get_field(skin, "inverseBindMatrices")
    if accessor_index is None:
        return None

    data = read_accessor(document, buffers, accessor_index, "Skin inverseBindMatrices")
    joint_nodes = get_list_field(skin, "joints")
    if data.shape != (len(joint_nodes), 16):
        raise ParseError(
            f"Skin has {len(joint_nodes)} joints but {data.shape[0]} inverse bind matrices"
        )

    by_joint: List[Optional[np.ndarray]] = [None] * len(joint_nodes)
    for slot, node_index in enumerate(joint_nodes):
        by_joint[node_to_joint[node_index]] = data[slot].reshape(4, 4).T
    return by_joint


#########################
# MESH
#########################

def _find_mesh_node(document: Any) -> Tuple[Optional[int], Optional[int]]:
    """(mesh index, skin index) of the node that carries the model's mesh."""
    fallback = None
    for _, node in safe_iterate(document, "nodes"):
        mesh_index = get_field(node, "mesh")
        if mesh_index is None:
            continue
        skin_index = get_field(node, "skin")
        if skin_index == 0:
            return mesh_index, 0
        if fallback is None:
            fallback = (mesh_index, skin_index)

    if fallback is not None:
        return fallback
    if get_list_field(document, "meshes"):
        return 0, None
    return None, None


def _read_mesh(document: Any, buffers: List[bytes], node_to_joint: Dict[int, int]) -> Mesh:
    mesh_index, skin_index = _find_mesh_node(document)
    if mesh_index is None:
        return Mesh()

    skins = get_list_field(document, "skins")
    palette: List[Optional[int]] = []
    if skin_index is not None:
        if not isinstance(skin_index, int) or not 0 <= skin_index < len(skins):
            raise MissingSkinError(f"Mesh node references skin {skin_index}, but the document has {len(skins)}")
        if skin_index != 0:
            logger.warning(f"Mesh uses skin {skin_index}; joints are resolved against the first skin")
        palette = [node_to_joint.get(node) for node in get_list_field(skins[skin_index], "joints")]

    gltf_mesh = resolve(document, "meshes", mesh_index, "Mesh node")
    mesh_name = get_field(gltf_mesh, "name", "")

    vertices: List[Vertex] = []
    indices: List[int] = []
    for primitive_index, primitive in safe_iterate(gltf_mesh, "primitives"):
        mode = get_field(primitive, "mode", TRIANGLES)
        if mode != TRIANGLES:
            raise AssetImportError(
                f"Primitive {primitive_index} of mesh '{mesh_name}' uses mode {mode}; only triangles are supported"
            )
        base = len(vertices)
        count = _read_primitive_vertices(document, buffers, primitive, palette, skin_index, vertices)

        index_accessor = get_field(primitive, "indices")
        if index_accessor is None:
            primitive_indices = list(range(count))
        else:
            raw = read_accessor(document, buffers, index_accessor, f"Primitive {primitive_index}")
            primitive_indices = [int(i) for i in raw.reshape(-1)]
        if len(primitive_indices) % 3 != 0:
            raise ParseError(
                f"Primitive {primitive_index} of mesh '{mesh_name}' has {len(primitive_indices)} indices, "
                f"not a multiple of three"
            )
        for i in primitive_indices:
            if not 0 <= i < count:
                raise ParseError(f"Primitive {primitive_index} index {i} is outside its {count} vertices")
        indices.extend(base + i for i in primitive_indices)

    extras = get_field(gltf_mesh, "extras", {})
    metadata = dict(extras) if isinstance(extras, dict) and extras else None
    return Mesh(name=mesh_name, vertices=vertices, indices=indices, metadata=metadata)


def _read_primitive_vertices(
    document: Any,
    buffers: List[bytes],
    primitive: Any,
    palette: List[Optional[int]],
    skin_index: Optional[int],
    vertices: List[Vertex],
) -> int:
    """Append a primitive's vertices and return how many were read."""
    attributes = get_attributes(primitive)
    if "POSITION" not in attributes:
        raise ParseError("Primitive has no POSITION attribute")

    positions = read_accessor(document, buffers, attributes["POSITION"], "POSITION")
    count = len(positions)

    def optional_attribute(name: str, width: int) -> np.ndarray:
        if name not in attributes:
            return np.zeros((count, width))
        data = read_accessor(document, buffers, attributes[name], name)
        if len(data) != count:
            raise ParseError(f"{name} has {len(data)} elements but POSITION has {count}")
        return data

    normals = optional_attribute("NORMAL", 3)
    uvs = optional_attribute("TEXCOORD_0", 2)

    joints = weights = None
    if "JOINTS_0" in attributes:
        if skin_index is None:
            raise MissingSkinError("Mesh has a JOINTS_0 attribute but its node has no skin")
        if "WEIGHTS_0" not in attributes:
            raise ParseError("Mesh has JOINTS_0 without WEIGHTS_0")
        joints = optional_attribute("JOINTS_0", 4)
        weights = optional_attribute("WEIGHTS_0", 4)

    for i in range(count):
        vertex_joints: List[int] = []
        vertex_weights: List[float] = []
        if joints is not None:
            for k in range(joints.shape[1]):
                weight = float(weights[i][k])
                if weight <= 0.0:
                    continue
                slot = int(joints[i][k])
                if not 0 <= slot < len(palette):
                    raise ParseError(f"Vertex {len(vertices)} uses skin joint slot {slot} of {len(palette)}")
                joint_index = palette[slot]
                if joint_index is None:
                    raise AssetImportError(f"Vertex {len(vertices)} is bound to a node outside the first skin")
                vertex_joints.append(joint_index)
                vertex_weights.append(weight)

        vertices.append(Vertex(
            position=[float(c) for c in positions[i][:3]],
            normal=[float(c) for c in normals[i][:3]],
            uv=[float(c) for c in uvs[i][:2]],
            joints=vertex_joints,
            weights=vertex_weights,
        ))
    return count


#########################
# ANIMATION
#########################

def _read_sampler(
    document: Any,
    buffers: List[bytes],
    animation: Any,
    channel: Any,
    channel_index: int,
) -> Tuple[List[float], np.ndarray]:
    samplers = get_list_field(animation, "samplers")
    sampler_index = get_field(channel, "sampler")
    if not isinstance(sampler_index, int) or not 0 <= sampler_index < len(samplers):
        raise ParseError(f"Channel {channel_index} references missing sampler {sampler_index}")
    sampler = samplers[sampler_index]

    times = read_accessor(document, buffers, get_field(sampler, "input"), f"Sampler {sampler_index} input")
    values = read_accessor(document, buffers, get_field(sampler, "output"), f"Sampler {sampler_index} output")
    times = [float(t) for t in times.reshape(-1)]

    if get_field(sampler, "interpolation", "LINEAR") == "CUBICSPLINE":
        # in-tangent, value, out-tangent per key
        values = values[1::3]
    if len(values) != len(times):
        raise ParseError(
            f"Sampler {sampler_index} has {len(times)} keyframe times but {len(values)} values"
        )
    return times, values


def _read_animation(
    document: Any,
    buffers: List[bytes],
    node_to_joint: Dict[int, int],
) -> Optional[AnimationClip]:
    animations = get_list_field(document, "animations")
    if not animations:
        return None
    if len(animations) > 1:
        logger.warning(f"Document has {len(animations)} animations; only the first is imported")

    animation = animations[0]
    nodes = get_list_field(document, "nodes")
    rotation_tracks: Dict[int, RotationTrack] = {}
    translation_track = TranslationTrack()

    for channel_index, channel in safe_iterate(animation, "channels"):
        target = get_field(channel, "target", {})
        node_index = get_field(target, "node")
        path = get_field(target, "path")
        if node_index is None:
            continue

        joint_index = node_to_joint.get(node_index)
        if joint_index is None:
            if not node_to_joint and 0 <= node_index < len(nodes) and \
                    joint_index_from_name(get_field(nodes[node_index], "name")) is not None:
                raise MissingSkinError(
                    f"Animation targets joint '{get_field(nodes[node_index], 'name')}' but the document has no skin"
                )
            logger.warning(f"Ignoring {path} channel on non-joint node {node_index}")
            continue

        if path == "rotation" and joint_index >= 1:
            if joint_index in rotation_tracks:
                logger.warning(f"Ignoring duplicate rotation channel for {joint_name(joint_index)}")
                continue
            times, values = _read_sampler(document, buffers, animation, channel, channel_index)
            rotation_tracks[joint_index] = RotationTrack(
                joint_index=joint_index,
                times=times,
                rotations=[[float(q[3]), float(q[0]), float(q[1]), float(q[2])] for q in values],
            )
        elif path == "translation" and joint_index == 0:
            times, values = _read_sampler(document, buffers, animation, channel, channel_index)
            translation_track = TranslationTrack(
                times=times,
                translations=[[float(c) for c in v[:3]] for v in values],
            )
        else:
            logger.warning(f"Ignoring {path} channel on {joint_name(joint_index)}")

    return AnimationClip(
        name=get_field(animation, "name") or "animation",
        rotation_tracks=[rotation_tracks[i] for i in sorted(rotation_tracks)],
        translation_track=translation_track,
    )
