"""Custom exceptions for asset conversion"""

from typing import Optional


class ConversionError(Exception):
    """Base exception for conversion errors"""
    pass


class ParseError(ConversionError):
    """Malformed or truncated input bytes"""

    def __init__(self, message: str, offset: Optional[int] = None):
        if offset is not None:
            message = f"{message} (at byte {offset})"
        super().__init__(message)
        self.offset = offset


class AssetImportError(ConversionError):
    """GLTF input violates the naming/bind-pose convention or lacks a skin"""

    def __init__(self, message: str, joint_index: Optional[int] = None):
        super().__init__(message)
        self.joint_index = joint_index


class NamingViolation(AssetImportError):
    """Joint node name is not "root" or "bone_{i}" matching its index"""

    def __init__(self, message: str, name: Optional[str] = None, joint_index: Optional[int] = None):
        super().__init__(message, joint_index=joint_index)
        self.name = name


class BindPoseViolation(AssetImportError):
    """Non-root joint has a non-identity bind rotation"""
    pass


class MissingSkinError(AssetImportError):
    """Skinned data references a skin that does not exist"""
    pass


class StructuralError(ConversionError):
    """Scene invariant violation"""

    def __init__(
        self,
        message: str,
        rule: str,
        joint_index: Optional[int] = None,
        vertex_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.rule = rule
        self.joint_index = joint_index
        self.vertex_index = vertex_index


class EncodeError(ConversionError):
    """Scene cannot be serialized to the requested format"""
    pass


class ConsistencyError(ConversionError):
    """Input files do not describe one coherent model"""
    pass


class AssetIOError(ConversionError):
    """Filesystem failure while reading inputs or writing outputs"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ConversionCancelled(ConversionError):
    """Caller abandoned the conversion between pipeline stages"""
    pass
