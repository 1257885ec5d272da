"""
GLTF Document Utilities

Field access for GLTF documents that may be pygltflib objects (loaded
files) or plain JSON dicts (documents built in memory), plus index
resolution that turns dangling references into ParseError instead of
IndexError/KeyError.
"""

from typing import Any, Dict, Iterator, Optional, Tuple

from chaseconv.exceptions import ParseError


def get_field(obj: Any, field_name: str, default: Any = None) -> Any:
    """
    Get field from either dict or pygltflib object format

    Args:
        obj: Dict or object to extract field from
        field_name: Name of field to extract
        default: Default value if field is missing or None

    Returns:
        Field value or default
    """
    if obj is None:
        return default

    if isinstance(obj, dict):
        value = obj.get(field_name, default)
    else:
        value = getattr(obj, field_name, default)
    return default if value is None else value


def get_list_field(obj: Any, field_name: str) -> list:
    """Get a list field; anything that is not a list reads as empty."""
    value = get_field(obj, field_name, [])
    if not isinstance(value, list):
        return []
    return value


def resolve(document: Any, collection: str, index: Optional[int], referrer: str) -> Any:
    """
    Look up `document[collection][index]`.

    Args:
        document: GLTF document
        collection: Top-level array name ("nodes", "accessors", ...)
        index: Index to resolve
        referrer: Human-readable owner of the reference, for the error message

    Returns:
        The referenced item

    Raises:
        ParseError: If the index is missing, not an integer or out of range
    """
    items = get_list_field(document, collection)
    if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(items):
        raise ParseError(f"{referrer} references {collection}[{index}], but the document has {len(items)}")
    return items[index]


def safe_iterate(obj: Any, field_name: str) -> Iterator[Tuple[int, Any]]:
    """Yield (index, item) tuples over a list field."""
    for idx, item in enumerate(get_list_field(obj, field_name)):
        yield idx, item


def get_attributes(primitive: Any) -> Dict[str, int]:
    """
    Primitive attributes as a name -> accessor index dict.

    pygltflib keeps attributes on an Attributes object whose unset
    semantics (TANGENT, COLOR_0, ...) are None; those are left out.
    """
    attributes = get_field(primitive, "attributes", {})
    if not isinstance(attributes, dict):
        attributes = vars(attributes)
    return {name: index for name, index in attributes.items() if index is not None}
