"""
Tests for the GLTF codec (import/export, container handling, conventions)
"""
import base64
import json
import os
import struct
import tempfile

import numpy as np
import pytest

from chaseconv.exceptions import (
    AssetImportError,
    AssetIOError,
    BindPoseViolation,
    EncodeError,
    MissingSkinError,
    NamingViolation,
    ParseError,
)
from chaseconv.converters.gltf import decode_gltf, encode_gltf, export_glb, export_gltf, import_glb, import_gltf
from chaseconv.converters.gltf.container import load_buffers, load_glb, load_gltf_json
from chaseconv.converters.grandchase.p3m import decode_p3m, encode_p3m
from chaseconv.schema.scene import AnimationClip, RotationTrack, Scene, TranslationTrack
from builders import create_scene, create_simple_p3m

QUARTER_TURN_Z = [0.7071067811865476, 0.0, 0.0, 0.7071067811865476]


def create_animated_scene() -> Scene:
    scene = create_scene(bone_count=2)
    scene.animation = AnimationClip(
        name="wave",
        rotation_tracks=[
            RotationTrack(joint_index=2, times=[0.0, 0.5], rotations=[[1.0, 0.0, 0.0, 0.0], QUARTER_TURN_Z]),
        ],
        translation_track=TranslationTrack(
            times=[0.0, 0.5], translations=[[0.0, 0.0, 0.0], [1.0, 0.0, 0.25]],
        ),
    )
    return scene


class DocumentBuilder:
    """Hand-assembles small GLTF documents with one embedded buffer."""

    def __init__(self):
        self.blob = bytearray()
        self.document = {
            "asset": {"version": "2.0"},
            "nodes": [],
            "accessors": [],
            "bufferViews": [],
        }

    def view(self, data: bytes, stride=None) -> int:
        self.blob.extend(b"\x00" * (-len(self.blob) % 4))
        view = {"buffer": 0, "byteOffset": len(self.blob), "byteLength": len(data)}
        if stride:
            view["byteStride"] = stride
        self.document["bufferViews"].append(view)
        self.blob.extend(data)
        return len(self.document["bufferViews"]) - 1

    def accessor(self, array: np.ndarray, component_type: int, accessor_type: str, **extra) -> int:
        view = self.view(array.tobytes())
        return self.raw_accessor(view, component_type, accessor_type, len(array), **extra)

    def raw_accessor(self, view: int, component_type: int, accessor_type: str, count: int, **extra) -> int:
        accessor = {"bufferView": view, "componentType": component_type, "type": accessor_type, "count": count}
        accessor.update(extra)
        self.document["accessors"].append(accessor)
        return len(self.document["accessors"]) - 1

    def build(self):
        blob = bytes(self.blob)
        self.document["buffers"] = [{
            "byteLength": len(blob),
            "uri": "data:application/octet-stream;base64," + base64.b64encode(blob).decode("ascii"),
        }]
        return self.document, [blob]


class TestExport:
    """Test Scene → GLTF document structure"""

    def test_document_layout(self):
        """Test joint nodes, mesh node and skin layout"""
        document, buffers = encode_gltf(create_scene(bone_count=2))

        names = [node["name"] for node in document["nodes"]]
        assert names == ["root", "bone_1", "bone_2", "triangle"]
        assert document["nodes"][0]["children"] == [1]
        assert document["nodes"][3]["mesh"] == 0
        assert document["nodes"][3]["skin"] == 0
        assert document["skins"][0]["joints"] == [0, 1, 2]
        assert document["skins"][0]["skeleton"] == 0
        assert document["buffers"][0]["byteLength"] == len(buffers[0])

    def test_attributes(self):
        document, _ = encode_gltf(create_scene())
        attributes = document["meshes"][0]["primitives"][0]["attributes"]

        for name in ["POSITION", "NORMAL", "TEXCOORD_0", "JOINTS_0", "WEIGHTS_0"]:
            assert name in attributes
        assert document["accessors"][attributes["JOINTS_0"]]["componentType"] == 5123
        position = document["accessors"][attributes["POSITION"]]
        assert position["min"] == [0.0, 1.0, 0.0]
        assert position["max"] == [1.0, 2.0, 0.0]

    def test_coordinates_mirrored(self):
        """Test that z is negated at the GLTF boundary"""
        scene = create_scene(bone_count=1)
        scene.skeleton.joints[1].translation = [0.0, 1.0, 2.0]

        document, _ = encode_gltf(scene)

        assert document["nodes"][1]["translation"] == [0.0, 1.0, -2.0]

    def test_skeleton_without_clip_has_no_animation(self):
        document, _ = encode_gltf(create_scene())
        assert not document.get("animations")

    def test_clip_without_skeleton_fails(self):
        scene = Scene(animation=create_animated_scene().animation)

        with pytest.raises(EncodeError):
            encode_gltf(scene)

    def test_animation_channels(self):
        document, _ = encode_gltf(create_animated_scene())
        animation = document["animations"][0]

        assert animation["name"] == "wave"
        targets = [(c["target"]["node"], c["target"]["path"]) for c in animation["channels"]]
        assert targets == [(2, "rotation"), (0, "translation")]
        assert all(s["interpolation"] == "LINEAR" for s in animation["samplers"])

    def test_glb_container(self):
        data = export_glb(create_scene())

        assert data[:4] == b"glTF"
        gltf = load_glb(data)
        assert gltf.buffers[0].byteLength <= len(gltf.binary_blob())
        assert len(import_glb(data).mesh.vertices) == 3

    def test_gltf_embeds_buffer(self):
        document = json.loads(export_gltf(create_scene()))
        assert document["buffers"][0]["uri"].startswith("data:application/octet-stream;base64,")


class TestRoundtrip:
    """Test Scene → GLTF → Scene"""

    def test_p3m_to_glb_to_p3m(self):
        """Test that geometry and bind pose survive a trip through GLB"""
        original = decode_p3m(create_simple_p3m())

        imported = import_glb(export_glb(original))
        restored = decode_p3m(encode_p3m(imported))

        assert restored.skeleton.joints == original.skeleton.joints
        assert restored.mesh.indices == original.mesh.indices
        for a, b in zip(restored.mesh.vertices, original.mesh.vertices):
            assert a.position == pytest.approx(b.position)
            assert a.joints == b.joints
            assert a.uv == pytest.approx(b.uv)

    def test_texture_name_survives_glb(self):
        """Test that the P3M texture file name is carried as mesh extras"""
        original = decode_p3m(create_simple_p3m())

        document, _ = encode_gltf(original)
        restored = decode_p3m(encode_p3m(import_glb(export_glb(original))))

        assert document["meshes"][0]["extras"] == {"texture_name": "knight.dds"}
        assert restored.metadata["p3m"]["texture_name"] == "knight.dds"

    def test_gltf_text_matches_glb(self):
        scene = create_animated_scene()

        from_glb = import_glb(export_glb(scene))
        from_gltf = import_gltf(export_gltf(scene))

        assert from_glb == from_gltf

    def test_animation_roundtrip(self):
        scene = create_animated_scene()

        clip = import_glb(export_glb(scene)).animation

        assert [t.joint_index for t in clip.rotation_tracks] == [2]
        assert clip.rotation_tracks[0].rotations[1] == pytest.approx(QUARTER_TURN_Z, abs=1e-6)
        assert clip.translation_track.translations[1] == pytest.approx([1.0, 0.0, 0.25])
        assert clip.translation_track.times == pytest.approx([0.0, 0.5])


class TestImportConventions:
    """Test the naming, bind-pose and skin rules on import"""

    def test_renamed_joint(self):
        document, buffers = encode_gltf(create_scene(bone_count=2))
        document["nodes"][1]["name"] = "Spine"

        with pytest.raises(NamingViolation) as exc_info:
            decode_gltf(document, buffers)

        assert exc_info.value.name == "Spine"

    def test_gap_in_names(self):
        """Test that root, bone_1, bone_3 is rejected because bone_2 is missing"""
        document, buffers = encode_gltf(create_scene(bone_count=2))
        document["nodes"][2]["name"] = "bone_3"

        with pytest.raises(NamingViolation) as exc_info:
            decode_gltf(document, buffers)

        assert exc_info.value.joint_index == 2

    def test_duplicate_name(self):
        document, buffers = encode_gltf(create_scene(bone_count=2))
        document["nodes"][2]["name"] = "bone_1"

        with pytest.raises(NamingViolation):
            decode_gltf(document, buffers)

    def test_names_decide_joint_order(self):
        """Test that skin joint order does not matter, only the names"""
        document, buffers = encode_gltf(create_scene(bone_count=2))
        skin = document["skins"][0]
        skin.pop("inverseBindMatrices")
        skin["joints"] = [2, 0, 1]

        scene = decode_gltf(document, buffers)

        assert [j.parent for j in scene.skeleton.joints] == [None, 0, 1]

    def test_bind_rotation_rejected(self):
        """Test that a non-root joint with a bind rotation is a hard error"""
        document, buffers = encode_gltf(create_scene(bone_count=2))
        document["nodes"][1]["rotation"] = [0.0, 0.7071068, 0.0, 0.7071068]

        with pytest.raises(BindPoseViolation) as exc_info:
            decode_gltf(document, buffers)

        assert exc_info.value.joint_index == 1

    def test_joints_without_skin(self):
        document, buffers = encode_gltf(create_scene())
        document.pop("skins")
        document["nodes"][3].pop("skin")

        with pytest.raises(MissingSkinError):
            decode_gltf(document, buffers)

    def test_skin_index_out_of_range(self):
        document, buffers = encode_gltf(create_scene())
        document["nodes"][3]["skin"] = 4

        with pytest.raises(MissingSkinError):
            decode_gltf(document, buffers)

    def test_animated_joint_without_skin(self):
        document, buffers = encode_gltf(create_animated_scene())
        document.pop("skins")
        document["nodes"][3].pop("skin")
        document["meshes"][0]["primitives"][0]["attributes"].pop("JOINTS_0")

        with pytest.raises(MissingSkinError):
            decode_gltf(document, buffers)

    def test_malformed_node_translation(self):
        """Test that schema violations in the document surface as ParseError"""
        document, buffers = encode_gltf(create_scene(bone_count=2))
        document["nodes"][1]["translation"] = [0.0, 1.0]

        with pytest.raises(ParseError):
            decode_gltf(document, buffers)

    def test_malformed_node_rotation(self):
        document, buffers = encode_gltf(create_scene(bone_count=2))
        document["nodes"][1]["rotation"] = [0.0, 0.0, 1.0]

        with pytest.raises(ParseError):
            decode_gltf(document, buffers)

    def test_malformed_node_in_file(self):
        """Test that a bad node loaded through pygltflib is a ParseError"""
        document = json.loads(export_gltf(create_scene(bone_count=2)))
        document["nodes"][0]["rotation"] = [0.0, 1.0]

        with pytest.raises(ParseError):
            import_gltf(json.dumps(document))

    def test_non_triangle_primitive(self):
        document, buffers = encode_gltf(create_scene())
        document["meshes"][0]["primitives"][0]["mode"] = 1

        with pytest.raises(AssetImportError):
            decode_gltf(document, buffers)

    def test_extra_animations_ignored(self, caplog):
        document, buffers = encode_gltf(create_animated_scene())
        second = json.loads(json.dumps(document["animations"][0]))
        second["name"] = "second"
        document["animations"].append(second)

        scene = decode_gltf(document, buffers)

        assert scene.animation.name == "wave"
        assert "only the first" in caplog.text


class TestAccessors:
    """Test accessor reading on hand-built documents"""

    def test_interleaved_and_normalized(self):
        """Test byteStride, normalized UVs and winding/mirror on an unskinned mesh"""
        builder = DocumentBuilder()
        interleaved = np.array([
            [0, 0, 1, 0, 1, 0],
            [1, 0, 1, 0, 1, 0],
            [0, 1, 1, 0, 1, 0],
        ], dtype=np.float32)
        view = builder.view(interleaved.tobytes(), stride=24)
        position = builder.raw_accessor(view, 5126, "VEC3", 3)
        normal = builder.raw_accessor(view, 5126, "VEC3", 3, byteOffset=12)
        uv = builder.accessor(np.array([[255, 0], [0, 255], [255, 255]], dtype=np.uint8), 5121, "VEC2",
                              normalized=True)
        builder.document["meshes"] = [{"primitives": [{"attributes": {
            "POSITION": position, "NORMAL": normal, "TEXCOORD_0": uv,
        }}]}]
        builder.document["nodes"] = [{"name": "mesh", "mesh": 0}]

        scene = decode_gltf(*builder.build())
        vertices = scene.mesh.vertices

        assert vertices[1].position == [1.0, 0.0, -1.0]
        assert vertices[0].normal == [0.0, 1.0, 0.0]
        assert vertices[0].uv == [1.0, 0.0]
        assert vertices[2].uv == [1.0, 1.0]
        assert scene.mesh.indices == [0, 2, 1]
        assert scene.skeleton is None

    def test_cubic_spline_uses_values(self):
        """Test that the in/out tangents of CUBICSPLINE samplers are skipped"""
        builder = DocumentBuilder()
        times = builder.accessor(np.array([[0.0], [1.0]], dtype=np.float32), 5126, "SCALAR")
        zero = [0.0, 0.0, 0.0, 0.0]
        values = np.array([
            zero, [0.0, 0.0, 0.0, 1.0], zero,
            zero, [0.0, 0.0, 0.7071068, 0.7071068], zero,
        ], dtype=np.float32)
        output = builder.accessor(values, 5126, "VEC4")
        builder.document["nodes"] = [
            {"name": "root", "children": [1]},
            {"name": "bone_1", "translation": [0.0, 1.0, 0.0]},
        ]
        builder.document["skins"] = [{"joints": [0, 1]}]
        builder.document["animations"] = [{
            "samplers": [{"input": times, "output": output, "interpolation": "CUBICSPLINE"}],
            "channels": [{"sampler": 0, "target": {"node": 1, "path": "rotation"}}],
        }]

        scene = decode_gltf(*builder.build())
        rotations = scene.animation.rotation_tracks[0].rotations

        assert len(rotations) == 2
        assert rotations[0] == pytest.approx([1.0, 0.0, 0.0, 0.0])
        assert rotations[1] == pytest.approx([0.7071068, 0.0, 0.0, 0.7071068], abs=1e-6)

    def test_accessor_out_of_bounds(self):
        builder = DocumentBuilder()
        view = builder.view(np.zeros((2, 3), dtype=np.float32).tobytes())
        position = builder.raw_accessor(view, 5126, "VEC3", 5)
        builder.document["meshes"] = [{"primitives": [{"attributes": {"POSITION": position}}]}]
        builder.document["nodes"] = [{"name": "mesh", "mesh": 0}]

        with pytest.raises(ParseError):
            decode_gltf(*builder.build())

    def test_dangling_accessor_reference(self):
        builder = DocumentBuilder()
        builder.document["meshes"] = [{"primitives": [{"attributes": {"POSITION": 7}}]}]
        builder.document["nodes"] = [{"name": "mesh", "mesh": 0}]

        with pytest.raises(ParseError):
            decode_gltf(*builder.build())


class TestContainer:
    """Test GLB loading and buffer resolution"""

    def test_bad_magic(self):
        with pytest.raises(ParseError):
            load_glb(b"NOPE" + struct.pack("<II", 2, 12))

    def test_truncated_glb(self):
        data = export_glb(create_scene())

        with pytest.raises(ParseError):
            import_glb(data[:len(data) // 2])

    def test_truncated_bin_chunk(self):
        """Test that a BIN chunk shorter than its buffer is rejected"""
        data = export_glb(create_scene())

        with pytest.raises(ParseError):
            import_glb(data[:-8])

    def test_glb_without_chunks(self):
        with pytest.raises(ParseError):
            import_glb(b"glTF" + struct.pack("<II", 2, 12))

    def test_invalid_json(self):
        with pytest.raises(ParseError):
            import_gltf("{not json")

    def test_external_buffer(self):
        """Test that buffers are loaded from files next to the asset"""
        document, buffers = encode_gltf(create_scene())
        with tempfile.TemporaryDirectory() as tmpdir:
            with open(os.path.join(tmpdir, "model.bin"), "wb") as f:
                f.write(buffers[0])
            document["buffers"][0]["uri"] = "model.bin"
            gltf_path = os.path.join(tmpdir, "model.gltf")
            with open(gltf_path, "w") as f:
                json.dump(document, f)

            scene = import_gltf(gltf_path)

        assert len(scene.mesh.vertices) == 3

    def test_missing_external_buffer(self):
        document = {"asset": {"version": "2.0"}, "buffers": [{"uri": "missing.bin", "byteLength": 4}]}
        with tempfile.TemporaryDirectory() as tmpdir:
            gltf = load_gltf_json(json.dumps(document), tmpdir)

            with pytest.raises(AssetIOError) as exc_info:
                load_buffers(gltf)

        assert exc_info.value.path.endswith("missing.bin")

    def test_unsupported_data_uri(self):
        gltf = load_gltf_json(json.dumps({"buffers": [{"uri": "data:image/png;base64,AAAA", "byteLength": 3}]}))

        with pytest.raises(ParseError):
            load_buffers(gltf)

    def test_gltf_buffer_mime_type(self):
        gltf = load_gltf_json(json.dumps(
            {"buffers": [{"uri": "data:application/gltf-buffer;base64,AAECAw==", "byteLength": 4}]}
        ))

        assert load_buffers(gltf) == [b"\x00\x01\x02\x03"]

    def test_short_buffer(self):
        gltf = load_gltf_json(json.dumps(
            {"buffers": [{"uri": "data:application/octet-stream;base64,AAECAw==", "byteLength": 8}]}
        ))

        with pytest.raises(ParseError):
            load_buffers(gltf)
