"""
GLTF container loading through pygltflib.

GLB files and JSON documents are loaded as pygltflib GLTF2 objects, and
every buffer is resolved to bytes with pygltflib's own URI handling: the
GLB binary blob, a base64 data URI, or a file next to the asset. Library
failures are re-raised as ParseError / AssetIOError.
"""

import logging
import os
import struct
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import unquote

import pygltflib
from pygltflib import GLTF2

from chaseconv.exceptions import AssetIOError, ParseError
from chaseconv.converters.gltf.format_utils import get_field, safe_iterate

logger = logging.getLogger(__name__)

BUFFER_MIME_TYPES = ("application/octet-stream", "application/gltf-buffer")


def is_glb(data: bytes) -> bool:
    return bytes(data[:4]) == pygltflib.MAGIC


def load_glb(data: bytes, base_dir: Optional[str] = None) -> GLTF2:
    """
    Load a binary GLB container.

    Args:
        data: Complete GLB file contents
        base_dir: Directory external buffer URIs are relative to

    Returns:
        GLTF2 with the BIN chunk attached as its binary blob

    Raises:
        ParseError: Bad magic, truncated chunks or invalid JSON chunk
    """
    if not is_glb(data):
        raise ParseError("Invalid GLB magic", offset=0)
    try:
        gltf = GLTF2.load_from_bytes(bytes(data))
    except (OSError, struct.error, ValueError, TypeError, KeyError, AttributeError) as e:
        raise ParseError(f"Invalid GLB container: {e}") from e
    if gltf is None:
        raise ParseError("GLB has no JSON chunk")
    _set_base_dir(gltf, base_dir)
    return gltf


def load_gltf_json(payload: Union[str, bytes], base_dir: Optional[str] = None) -> GLTF2:
    """Load a JSON GLTF document, wrapping decode failures as ParseError."""
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        gltf = GLTF2.gltf_from_json(payload)
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise ParseError(f"Invalid GLTF JSON: {e}") from e
    _set_base_dir(gltf, base_dir)
    return gltf


def load_buffers(gltf: GLTF2) -> List[bytes]:
    """
    Resolve every buffer of a loaded GLTF to bytes.

    Returns:
        List of buffer contents in document order

    Raises:
        ParseError: Buffer without data, bad data URI or short buffer
        AssetIOError: External buffer file missing or unreadable
    """
    buffers: List[bytes] = []
    for index, buffer in safe_iterate(gltf, "buffers"):
        uri = get_field(buffer, "uri")
        if uri is None:
            if index != 0 or gltf.binary_blob() is None:
                raise ParseError(f"Buffer {index} has no uri and no GLB BIN chunk")
            data = gltf.binary_blob()
        elif uri.startswith("data:"):
            data = _decode_data_uri(gltf, uri)
        else:
            data = _read_external(gltf, unquote(uri))

        byte_length = get_field(buffer, "byteLength", 0)
        if len(data) < byte_length:
            raise ParseError(f"Buffer {index} declares {byte_length} bytes but holds {len(data)}")
        buffers.append(bytes(data))
    return buffers


def _set_base_dir(gltf: GLTF2, base_dir: Optional[str]) -> None:
    # pygltflib resolves file URIs against _path, as GLTF2.load does
    gltf._path = Path(base_dir) if base_dir else Path()


def _decode_data_uri(gltf: GLTF2, uri: str) -> bytes:
    header, comma, payload = uri.partition(",")
    mime, _, encoding = header[len("data:"):].partition(";")
    if mime not in BUFFER_MIME_TYPES:
        raise ParseError(f"Unsupported buffer data URI type '{mime}'")
    if not comma or encoding != "base64":
        raise ParseError("Buffer data URI is not base64 encoded")

    # pygltflib only recognizes the octet-stream header
    try:
        return gltf.get_data_from_buffer_uri(pygltflib.DATA_URI_HEADER + payload)
    except ValueError as e:
        raise ParseError(f"Invalid base64 in buffer data URI: {e}") from e


def _read_external(gltf: GLTF2, uri: str) -> bytes:
    path = os.path.join(str(getattr(gltf, "_path", "")), uri)
    logger.debug(f"Loading external buffer {path}")
    if not os.path.isfile(path):
        raise AssetIOError(f"Cannot read external buffer '{uri}': no such file", path=path)
    try:
        return gltf.get_data_from_buffer_uri(uri)
    except OSError as e:
        raise AssetIOError(f"Cannot read external buffer '{uri}': {e}", path=path) from e
