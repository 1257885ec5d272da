"""
chaseconv - Convert GrandChase character assets to and from GLTF

Reads and writes P3M models and FRM animations, and exchanges them with
GLTF 2.0 (.gltf/.glb) through a single skinned-character Scene model.
"""

from chaseconv.schema.scene import Scene
from chaseconv.converters.convert import ChannelsDiscarded, ConversionReport, convert, convert_batch

__version__ = "0.1.0"
__all__ = ["Scene", "ConversionReport", "ChannelsDiscarded", "convert", "convert_batch"]
