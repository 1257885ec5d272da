"""
Format conversion utilities

Runs the conversion pipeline for a group of input files that together
describe one character (typically a .p3m model plus a .frm animation, or a
single .gltf/.glb):

    decode -> check consistency -> reconcile -> encode -> write

Each stage boundary checks the optional cancellation event. Outputs are
staged as temp files and only renamed into place once every output of the
group has been encoded, so a failed conversion leaves nothing behind.
"""

import logging
import os
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from chaseconv.exceptions import (
    AssetIOError,
    ConsistencyError,
    ConversionCancelled,
    ConversionError,
    EncodeError,
    NamingViolation,
    StructuralError,
)
from chaseconv.schema.scene import Mesh, Scene, Skeleton
from chaseconv.converters import (
    decode_frm,
    decode_p3m,
    encode_frm,
    encode_p3m,
    export_glb,
    export_gltf,
    import_glb,
    import_gltf,
    reconcile_scene,
)

logger = logging.getLogger(__name__)

TARGET_FORMATS = ("glb", "gltf", "grandchase")
MAX_WORKERS_ENV = "CHASECONV_MAX_WORKERS"
ROOT_TRANSLATION_TOLERANCE = 1e-4

# Serializes output name selection and renames across batch workers
_WRITE_LOCK = threading.Lock()


@dataclass
class ChannelsDiscarded:
    """Rotation tracks dropped because the target skeleton has no such joint."""
    count: int

    def __str__(self) -> str:
        return f"{self.count} animation channel(s) discarded: no matching joint in the model"


@dataclass
class ConversionReport:
    """
    Result of one conversion.

    Attributes:
        outputs: Paths of the files written, in write order
        warnings: Non-fatal findings (e.g. ChannelsDiscarded)
    """
    outputs: List[str] = field(default_factory=list)
    warnings: List[ChannelsDiscarded] = field(default_factory=list)


def convert(
    input_files: Union[str, Sequence[str]],
    target_format: str,
    output_dir: str,
    cancel_event: Optional[threading.Event] = None,
    output_name: Optional[str] = None,
) -> ConversionReport:
    """
    Convert a group of input files describing one character.

    Args:
        input_files: Paths of .p3m/.frm/.gltf/.glb files
        target_format: "glb", "gltf" or "grandchase" (writes .p3m and/or .frm)
        output_dir: Directory to write into (created if missing)
        cancel_event: Optional event; when set, the conversion stops at the
            next stage boundary
        output_name: Base name of the outputs (defaults to the model file's stem)

    Returns:
        ConversionReport with the written paths and any warnings

    Raises:
        ConversionError: Unknown target or input extension
        AssetIOError: Unreadable input or unwritable output
        ConsistencyError: Inputs do not describe one model
        ConversionCancelled: The cancellation event was set

    Examples:
        >>> convert(["knight.p3m", "knight_walk.frm"], "glb", "out/")
        >>> convert(["knight.glb"], "grandchase", "out/")
    """
    if isinstance(input_files, str):
        input_files = [input_files]
    if not input_files:
        raise ConversionError("No input files given")
    target = target_format.lower()
    if target not in TARGET_FORMATS:
        raise ConversionError(
            f"Unsupported target format: {target_format}. Supported: {', '.join(TARGET_FORMATS)}"
        )

    sources: List[Tuple[str, Scene]] = []
    for path in input_files:
        _check_cancelled(cancel_event, "decode")
        try:
            sources.append((path, load_scene(path)))
        except NamingViolation as e:
            if not sources:
                raise
            # Misnamed joints in a later input mean it does not fit the first one
            raise ConsistencyError(f"{path} does not match {sources[0][0]}: {e}") from e

    _check_cancelled(cancel_event, "consistency check")
    scene = merge_scenes(sources)

    _check_cancelled(cancel_event, "reconcile")
    report = ConversionReport()
    scene, discarded = reconcile_scene(scene)
    if discarded:
        report.warnings.append(ChannelsDiscarded(discarded))

    _check_cancelled(cancel_event, "encode")
    name = output_name or _default_name(sources)
    payloads = _encode(scene, target, name)

    _check_cancelled(cancel_event, "write")
    report.outputs = _write_outputs(payloads, output_dir)
    logger.info(f"Converted {len(input_files)} input(s) to {', '.join(report.outputs)}")
    return report


def convert_batch(
    groups: Sequence[Sequence[str]],
    target_format: str,
    output_dir: str,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[Union[ConversionReport, ConversionError]]:
    """
    Convert independent input groups in parallel.

    Args:
        groups: One list of input paths per character
        target_format: See convert()
        output_dir: Shared output directory
        max_workers: Thread count (defaults to $CHASECONV_MAX_WORKERS, then
            the executor's default)
        cancel_event: Shared cancellation event

    Returns:
        One ConversionReport or ConversionError per group, in input order
    """
    if max_workers is None:
        max_workers = _max_workers_from_env()

    results: List[Union[ConversionReport, ConversionError, None]] = [None] * len(groups)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(convert, list(group), target_format, output_dir, cancel_event): index
            for index, group in enumerate(groups)
        }
        for future in as_completed(futures):
            index = futures[future]
            try:
                results[index] = future.result()
            except ConversionError as e:
                logger.error(f"Conversion of group {index} failed: {e}")
                results[index] = e
    return results


#########################
# DECODE
#########################

def _detect_format(path: str) -> str:
    """Detect format from file extension"""
    ext = os.path.splitext(path)[1].lower()

    format_map = {
        '.p3m': 'p3m',
        '.frm': 'frm',
        '.gltf': 'gltf',
        '.glb': 'glb',
    }

    if ext not in format_map:
        raise ConversionError(
            f"Unsupported file format: {ext or path}. "
            f"Supported: .p3m, .frm, .gltf, .glb"
        )

    return format_map[ext]


def load_scene(path: str) -> Scene:
    """
    Read and decode one input file.

    Raises:
        ConversionError: Unknown extension
        AssetIOError: File missing or unreadable
    """
    input_format = _detect_format(path)
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise AssetIOError(f"Cannot read input file {path}: {e}", path=path) from e

    stem = os.path.splitext(os.path.basename(path))[0]
    base_dir = os.path.dirname(os.path.abspath(path))
    logger.info(f"Decoding {path} ({input_format})")

    if input_format == 'p3m':
        return decode_p3m(data, name=stem)
    elif input_format == 'frm':
        return decode_frm(data, name=stem)
    elif input_format == 'glb':
        return import_glb(data, base_dir=base_dir)
    else:
        return import_gltf(data, base_dir=base_dir)


#########################
# CONSISTENCY / MERGE
#########################

def merge_scenes(sources: Sequence[Tuple[str, Scene]]) -> Scene:
    """
    Combine decoded inputs into one Scene.

    At most one input may carry a mesh and at most one an animation. The
    first skeleton wins; later skeletons must agree with it on joint names,
    parents at shared indices and the root bind translation. A differing
    joint count is left to the reconciler.

    Args:
        sources: (path, scene) pairs in input order

    Returns:
        Validated merged Scene

    Raises:
        ConsistencyError: Inputs contradict each other
    """
    mesh: Mesh = Mesh()
    mesh_source: Optional[str] = None
    animation = None
    animation_source: Optional[str] = None
    skeleton: Optional[Skeleton] = None
    skeleton_source: Optional[str] = None
    metadata = None

    for path, scene in sources:
        if scene.has_mesh:
            if mesh_source is not None:
                raise ConsistencyError(f"Both {mesh_source} and {path} carry a mesh; only one model is allowed")
            mesh, mesh_source = scene.mesh, path
            metadata = scene.metadata

        if scene.animation is not None:
            if animation_source is not None:
                raise ConsistencyError(
                    f"Both {animation_source} and {path} carry an animation; convert them separately"
                )
            animation, animation_source = scene.animation, path

        if scene.skeleton is not None:
            if skeleton is None:
                skeleton, skeleton_source = scene.skeleton, path
                if metadata is None:
                    metadata = scene.metadata
            else:
                _check_skeletons(skeleton, skeleton_source, scene.skeleton, path)

    merged = Scene(mesh=mesh, skeleton=skeleton, animation=animation, metadata=metadata)
    try:
        return merged.validate()
    except StructuralError as e:
        raise ConsistencyError(f"Inputs do not combine into a valid model: {e}") from e


def _check_skeletons(first: Skeleton, first_source: str, other: Skeleton, other_source: str) -> None:
    shared = min(first.joint_count, other.joint_count)
    for index in range(shared):
        a, b = first.joints[index], other.joints[index]
        if a.name != b.name:
            raise ConsistencyError(
                f"Joint {index} is '{a.name}' in {first_source} but '{b.name}' in {other_source}"
            )
        if a.parent != b.parent:
            raise ConsistencyError(
                f"Joint '{a.name}' has parent {a.parent} in {first_source} but {b.parent} in {other_source}"
            )

    if shared and not np.allclose(
        first.joints[0].translation, other.joints[0].translation, atol=ROOT_TRANSLATION_TOLERANCE,
    ):
        raise ConsistencyError(
            f"Root bind translation differs between {first_source} and {other_source}"
        )

    if first.joint_count != other.joint_count:
        logger.info(
            f"{other_source} has {other.joint_count} joints, {first_source} has {first.joint_count}; "
            f"using the skeleton of {first_source}"
        )


def _default_name(sources: Sequence[Tuple[str, Scene]]) -> str:
    model_path = sources[0][0]
    for path, scene in sources:
        if scene.has_mesh or scene.skeleton is not None:
            model_path = path
            break
    return os.path.splitext(os.path.basename(model_path))[0]


#########################
# ENCODE / WRITE
#########################

def _encode(scene: Scene, target: str, name: str) -> List[Tuple[str, bytes]]:
    """Encode the scene to (file name, bytes) pairs for the target."""
    if target == 'glb':
        return [(f"{name}.glb", export_glb(scene))]
    if target == 'gltf':
        return [(f"{name}.gltf", export_gltf(scene).encode('utf-8'))]

    payloads = []
    if scene.has_mesh or scene.skeleton is not None:
        payloads.append((f"{name}.p3m", encode_p3m(scene)))
    if scene.animation is not None:
        payloads.append((f"{name}.frm", encode_frm(scene)))
    if not payloads:
        raise EncodeError("Nothing to write: the inputs carry no model and no animation")
    return payloads


def _write_outputs(payloads: List[Tuple[str, bytes]], output_dir: str) -> List[str]:
    """
    Write every payload or none of them.

    Payloads are staged as temp files in `output_dir`, then renamed into
    place. If an existing file would be overwritten, all outputs of the group
    get the same short uuid suffix instead.
    """
    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as e:
        raise AssetIOError(f"Cannot create output directory {output_dir}: {e}", path=output_dir) from e

    staged: List[str] = []
    renamed: List[str] = []
    try:
        for filename, data in payloads:
            fd, temp_path = tempfile.mkstemp(prefix=".chaseconv-", suffix=".tmp", dir=output_dir)
            staged.append(temp_path)
            with os.fdopen(fd, 'wb') as f:
                f.write(data)

        with _WRITE_LOCK:
            targets = _output_paths(output_dir, [filename for filename, _ in payloads])
            for temp_path, target in zip(staged, targets):
                os.replace(temp_path, target)
                renamed.append(target)
    except OSError as e:
        _remove_files(staged + renamed)
        raise AssetIOError(f"Cannot write outputs to {output_dir}: {e}", path=output_dir) from e

    for path in renamed:
        logger.debug(f"Wrote {path}")
    return renamed


def _output_paths(output_dir: str, filenames: List[str]) -> List[str]:
    paths = [os.path.join(output_dir, filename) for filename in filenames]
    if not any(os.path.exists(path) for path in paths):
        return paths

    suffix = uuid.uuid4().hex[:8]
    logger.info(f"Output name already taken in {output_dir}; adding suffix _{suffix}")
    suffixed = []
    for filename in filenames:
        stem, ext = os.path.splitext(filename)
        suffixed.append(os.path.join(output_dir, f"{stem}_{suffix}{ext}"))
    return suffixed


def _remove_files(paths: List[str]) -> None:
    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Could not remove {path} after a failed write: {e}")


#########################
# HELPERS
#########################

def _check_cancelled(cancel_event: Optional[threading.Event], stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info(f"Conversion cancelled before {stage}")
        raise ConversionCancelled(f"Conversion cancelled before {stage}")


def _max_workers_from_env() -> Optional[int]:
    value = os.environ.get(MAX_WORKERS_ENV)
    if not value:
        return None
    try:
        workers = int(value)
    except ValueError:
        workers = 0
    if workers < 1:
        raise ConversionError(f"{MAX_WORKERS_ENV} must be a positive integer, got '{value}'")
    return workers
