"""
Centralized coordinate transformation utilities.

Coordinate Systems:
- Game (Scene): Y-up, left-handed (Direct3D)
- GLTF: Y-up, right-handed

The two systems differ by a mirror across the XY plane, M = diag(1, 1, -1).
The transform is its own inverse, so the same helpers convert in both
directions:
- Positions, normals, translations: z -> -z
- Rotations: R -> M R M, i.e. quaternion [w, x, y, z] -> [w, -x, -y, z]
- Triangles: mirroring flips handedness, so winding order is swapped to
  keep faces pointing outwards
"""

from typing import List, Sequence

from chaseconv.schema.scene import Scene


def mirror_position(pos: Sequence[float]) -> List[float]:
    """
    Mirror a position, normal or translation across the XY plane.

    Args:
        pos: Vector [x, y, z]

    Returns:
        Vector [x, y, -z]
    """
    x, y, z = pos
    return [float(x), float(y), -float(z)]


def mirror_quaternion(quat: Sequence[float]) -> List[float]:
    """
    Mirror a rotation across the XY plane.

    A rotation about Z keeps its sense under the mirror while rotations
    about X and Y reverse, so only the x and y components change sign.

    Args:
        quat: Quaternion [w, x, y, z]

    Returns:
        Quaternion [w, -x, -y, z]
    """
    w, x, y, z = quat
    return [float(w), -float(x), -float(y), float(z)]


def flip_winding(indices: Sequence[int]) -> List[int]:
    """Swap the second and third index of every triangle."""
    flipped = list(indices)
    for i in range(0, len(flipped) - 2, 3):
        flipped[i + 1], flipped[i + 2] = flipped[i + 2], flipped[i + 1]
    return flipped


def mirror_scene(scene: Scene) -> Scene:
    """
    Convert a whole Scene between game and GLTF coordinates.

    Returns a new Scene; the input is left untouched. Metadata is carried
    over unchanged since it holds raw source bytes, not coordinates.

    Args:
        scene: Scene in either coordinate system

    Returns:
        Scene in the other coordinate system
    """
    mirrored = scene.model_copy(deep=True)

    for vertex in mirrored.mesh.vertices:
        vertex.position = mirror_position(vertex.position)
        vertex.normal = mirror_position(vertex.normal)
    mirrored.mesh.indices = flip_winding(mirrored.mesh.indices)

    if mirrored.skeleton is not None:
        for joint in mirrored.skeleton.joints:
            joint.translation = mirror_position(joint.translation)
            joint.rotation = mirror_quaternion(joint.rotation)

    if mirrored.animation is not None:
        for track in mirrored.animation.rotation_tracks:
            track.rotations = [mirror_quaternion(q) for q in track.rotations]
        translation = mirrored.animation.translation_track
        translation.translations = [mirror_position(t) for t in translation.translations]

    return mirrored
