"""
GLTF 2.0 codec.

Import parses JSON/GLB containers directly and reads accessors with numpy;
export builds the document with pygltflib.
"""

from chaseconv.converters.gltf.importer import decode_gltf, import_glb, import_gltf
from chaseconv.converters.gltf.exporter import encode_gltf, export_glb, export_gltf

__all__ = [
    "decode_gltf",
    "import_glb",
    "import_gltf",
    "encode_gltf",
    "export_glb",
    "export_gltf",
]
