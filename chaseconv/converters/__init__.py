"""Format converters for GrandChase character assets"""

from chaseconv.converters.grandchase.p3m import decode_p3m, encode_p3m
from chaseconv.converters.grandchase.frm import decode_frm, encode_frm
from chaseconv.converters.gltf.exporter import encode_gltf, export_glb, export_gltf
from chaseconv.converters.gltf.importer import decode_gltf, import_glb, import_gltf
from chaseconv.converters.reconcile import enforce_bind_pose, reconcile_animation, reconcile_scene

__all__ = [
    "decode_p3m",
    "encode_p3m",
    "decode_frm",
    "encode_frm",
    "encode_gltf",
    "export_glb",
    "export_gltf",
    "decode_gltf",
    "import_glb",
    "import_gltf",
    "enforce_bind_pose",
    "reconcile_animation",
    "reconcile_scene",
]
