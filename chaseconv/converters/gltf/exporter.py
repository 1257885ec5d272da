"""
Scene → GLTF Exporter

Builds the GLTF document with pygltflib. Layout of the output:

- nodes[0..n-1]: joints in skeleton order (node i is joint i), local TRS
- nodes[n]: the mesh node, bound to skin 0
- skins[0]: joints 0..n-1, skeleton = 0, inverse bind matrices
- animations[0]: LINEAR samplers, one rotation channel per rotation track
  plus the root translation channel (only when the Scene has a clip)

Everything is packed into a single buffer. The Scene is mirrored into
GLTF's right-handed space before any data is written.
"""

import base64
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pygltflib

from chaseconv.exceptions import EncodeError, StructuralError
from chaseconv.schema.scene import Scene, is_identity_rotation
from chaseconv.converters.coordinate_utils import mirror_scene
from chaseconv.converters.reconcile import inverse_bind_matrices

logger = logging.getLogger(__name__)

GENERATOR = "chaseconv"
MAX_U16_INDEX = 0xFFFF


class _BufferBuilder:
    """Accumulates binary data and registers bufferViews/accessors for it."""

    def __init__(self, gltf: pygltflib.GLTF2):
        self.gltf = gltf
        self.blob = bytearray()

    def add(
        self,
        data: np.ndarray,
        component_type: int,
        accessor_type: str,
        target: Optional[int] = None,
        with_bounds: bool = False,
    ) -> int:
        """Append `data` (one row per element) and return the new accessor index."""
        # Every view starts 4-byte aligned
        self.blob.extend(b"\x00" * (-len(self.blob) % 4))
        raw = data.tobytes()
        view_index = len(self.gltf.bufferViews)
        self.gltf.bufferViews.append(pygltflib.BufferView(
            buffer=0,
            byteOffset=len(self.blob),
            byteLength=len(raw),
            target=target,
        ))
        self.blob.extend(raw)

        accessor = pygltflib.Accessor(
            bufferView=view_index,
            byteOffset=0,
            componentType=component_type,
            count=len(data),
            type=accessor_type,
        )
        if with_bounds and len(data):
            rows = data.reshape(len(data), -1)
            accessor.min = [float(v) for v in rows.min(axis=0)]
            accessor.max = [float(v) for v in rows.max(axis=0)]
        self.gltf.accessors.append(accessor)
        return len(self.gltf.accessors) - 1

    def finish(self) -> bytes:
        self.blob.extend(b"\x00" * (-len(self.blob) % 4))
        return bytes(self.blob)


def build_gltf(scene: Scene) -> Tuple[pygltflib.GLTF2, bytes]:
    """
    Build a pygltflib document for a Scene.

    Args:
        scene: Scene in game coordinates

    Returns:
        Tuple of (GLTF2 object with buffers[0] sized but not attached, binary blob)

    Raises:
        EncodeError: If the scene fails validation, or carries an animation
            clip without a skeleton to play it on
    """
    try:
        scene.validate()
    except StructuralError as e:
        raise EncodeError(f"Scene is not valid for GLTF export: {e}") from e
    if scene.animation is not None and scene.skeleton is None:
        raise EncodeError("Cannot export an animation to GLTF without a skeleton; add the model (.p3m) input")
    if scene.animation is not None:
        for track in scene.animation.rotation_tracks:
            if track.joint_index >= scene.skeleton.joint_count:
                raise EncodeError(
                    f"Rotation track targets joint {track.joint_index} but the skeleton has "
                    f"{scene.skeleton.joint_count} joints; reconcile the animation first"
                )

    mirrored = mirror_scene(scene)

    gltf = pygltflib.GLTF2(
        asset=pygltflib.Asset(version="2.0", generator=GENERATOR),
        scene=0,
        scenes=[pygltflib.Scene(nodes=[])],
        nodes=[],
        meshes=[],
        accessors=[],
        bufferViews=[],
        buffers=[],
        skins=[],
        animations=[],
    )
    builder = _BufferBuilder(gltf)

    joint_count = 0
    if mirrored.skeleton is not None:
        joint_count = mirrored.skeleton.joint_count
        _add_joint_nodes(gltf, mirrored)
        gltf.scenes[0].nodes.append(0)

    if mirrored.has_mesh:
        _add_mesh(gltf, builder, mirrored, joint_count)

    if mirrored.skeleton is not None:
        ibm = inverse_bind_matrices(mirrored.skeleton)
        # GLTF matrices are column-major
        ibm_data = ibm.transpose(0, 2, 1).reshape(joint_count, 16).astype(np.float32)
        gltf.skins.append(pygltflib.Skin(
            name="skeleton",
            joints=list(range(joint_count)),
            skeleton=0,
            inverseBindMatrices=builder.add(ibm_data, pygltflib.FLOAT, pygltflib.MAT4),
        ))

    if mirrored.animation is not None:
        _add_animation(gltf, builder, mirrored)

    blob = builder.finish()
    gltf.buffers.append(pygltflib.Buffer(byteLength=len(blob)))
    logger.debug(
        f"Built GLTF: {len(gltf.nodes)} nodes, {len(gltf.accessors)} accessors, {len(blob)} buffer bytes"
    )
    return gltf, blob


def _add_joint_nodes(gltf: pygltflib.GLTF2, scene: Scene) -> None:
    skeleton = scene.skeleton
    for index, joint in enumerate(skeleton.joints):
        node = pygltflib.Node(name=joint.name, translation=[float(c) for c in joint.translation])
        if not is_identity_rotation(joint.rotation, 0.0):
            w, x, y, z = joint.rotation
            node.rotation = [float(x), float(y), float(z), float(w)]
        children = skeleton.children_of(index)
        if children:
            node.children = children
        gltf.nodes.append(node)


def _add_mesh(gltf: pygltflib.GLTF2, builder: _BufferBuilder, scene: Scene, joint_count: int) -> None:
    vertices = scene.mesh.vertices
    positions = np.array([v.position for v in vertices], dtype=np.float32)
    normals = np.array([v.normal for v in vertices], dtype=np.float32)
    uvs = np.array([v.uv for v in vertices], dtype=np.float32)

    attributes = pygltflib.Attributes(
        POSITION=builder.add(positions, pygltflib.FLOAT, pygltflib.VEC3, pygltflib.ARRAY_BUFFER, with_bounds=True),
        NORMAL=builder.add(normals, pygltflib.FLOAT, pygltflib.VEC3, pygltflib.ARRAY_BUFFER),
        TEXCOORD_0=builder.add(uvs, pygltflib.FLOAT, pygltflib.VEC2, pygltflib.ARRAY_BUFFER),
    )

    if joint_count:
        joints, weights = _influence_arrays(scene)
        attributes.JOINTS_0 = builder.add(joints, pygltflib.UNSIGNED_SHORT, pygltflib.VEC4, pygltflib.ARRAY_BUFFER)
        attributes.WEIGHTS_0 = builder.add(weights, pygltflib.FLOAT, pygltflib.VEC4, pygltflib.ARRAY_BUFFER)

    index_type = pygltflib.UNSIGNED_SHORT if len(vertices) <= MAX_U16_INDEX else pygltflib.UNSIGNED_INT
    index_dtype = np.uint16 if index_type == pygltflib.UNSIGNED_SHORT else np.uint32
    indices = np.array(scene.mesh.indices, dtype=index_dtype).reshape(-1, 1)
    primitive = pygltflib.Primitive(
        attributes=attributes,
        indices=builder.add(indices, index_type, pygltflib.SCALAR, pygltflib.ELEMENT_ARRAY_BUFFER),
    )

    mesh_name = scene.mesh.name or "mesh"
    gltf_mesh = pygltflib.Mesh(name=mesh_name, primitives=[primitive])
    texture_name = ((scene.metadata or {}).get("p3m") or {}).get("texture_name")
    if texture_name:
        gltf_mesh.extras = {"texture_name": texture_name}
    gltf.meshes.append(gltf_mesh)
    mesh_node = pygltflib.Node(name=mesh_name, mesh=0)
    if joint_count:
        mesh_node.skin = 0
    gltf.nodes.append(mesh_node)
    gltf.scenes[0].nodes.append(len(gltf.nodes) - 1)


def _influence_arrays(scene: Scene) -> Tuple[np.ndarray, np.ndarray]:
    """JOINTS_0/WEIGHTS_0 arrays; a vertex with no influences follows the root."""
    count = len(scene.mesh.vertices)
    joints = np.zeros((count, 4), dtype=np.uint16)
    weights = np.zeros((count, 4), dtype=np.float32)
    for i, vertex in enumerate(scene.mesh.vertices):
        if not vertex.joints:
            weights[i, 0] = 1.0
            continue
        total = sum(vertex.weights)
        for k, (joint, weight) in enumerate(zip(vertex.joints, vertex.weights)):
            joints[i, k] = joint
            weights[i, k] = weight / total if total > 0 else 0.0
    return joints, weights


def _add_animation(gltf: pygltflib.GLTF2, builder: _BufferBuilder, scene: Scene) -> None:
    clip = scene.animation
    samplers: List[pygltflib.AnimationSampler] = []
    channels: List[pygltflib.AnimationChannel] = []

    def add_channel(node: int, path: str, times: Sequence[float], values: np.ndarray, accessor_type: str) -> None:
        input_accessor = builder.add(
            np.array(times, dtype=np.float32).reshape(-1, 1), pygltflib.FLOAT, pygltflib.SCALAR, with_bounds=True,
        )
        output_accessor = builder.add(values.astype(np.float32), pygltflib.FLOAT, accessor_type)
        samplers.append(pygltflib.AnimationSampler(
            input=input_accessor, output=output_accessor, interpolation="LINEAR",
        ))
        channels.append(pygltflib.AnimationChannel(
            sampler=len(samplers) - 1,
            target=pygltflib.AnimationChannelTarget(node=node, path=path),
        ))

    for track in clip.rotation_tracks:
        if not track.times:
            continue
        # [w, x, y, z] -> GLTF [x, y, z, w]
        values = np.array([[q[1], q[2], q[3], q[0]] for q in track.rotations], dtype=np.float64)
        add_channel(track.joint_index, "rotation", track.times, values, pygltflib.VEC4)

    translation = clip.translation_track
    if translation.times:
        values = np.array(translation.translations, dtype=np.float64)
        add_channel(0, "translation", translation.times, values, pygltflib.VEC3)

    if not channels:
        logger.warning(f"Animation '{clip.name}' has no keyframes; no animation written")
        return
    gltf.animations.append(pygltflib.Animation(name=clip.name, samplers=samplers, channels=channels))


def encode_gltf(scene: Scene) -> Tuple[Dict[str, Any], List[bytes]]:
    """
    Encode a Scene as a GLTF document and its buffers.

    Returns:
        Tuple of (document dict, [buffer bytes]); the buffer has no URI
    """
    gltf, blob = build_gltf(scene)
    return json.loads(gltf.to_json()), [blob]


def export_glb(scene: Scene) -> bytes:
    """Export a Scene as a binary GLB container."""
    gltf, blob = build_gltf(scene)
    gltf.set_binary_blob(blob)
    return b"".join(gltf.save_to_bytes())


def export_gltf(scene: Scene) -> str:
    """Export a Scene as GLTF JSON with the buffer embedded as a base64 data URI."""
    gltf, blob = build_gltf(scene)
    gltf.buffers[0].uri = "data:application/octet-stream;base64," + base64.b64encode(blob).decode("ascii")
    return gltf.to_json(indent=2)
