"""
Geometry helpers for force plates: wrench transfer and footprint tests.
"""

from typing import List, Sequence

import numpy as np


def transform_wrench_to_world(
    moment: np.ndarray,
    force: np.ndarray,
    center_of_pressure: np.ndarray,
) -> np.ndarray:
    """
    Move a wrench applied at a center of pressure to the world origin.

    Args:
        moment: Moment about the COP [3].
        force: Force [3].
        center_of_pressure: COP in world coordinates [3].

    Returns:
        World wrench [6] as (torque about origin, force).
    """
    force = np.asarray(force, dtype=np.float64)
    torque = np.asarray(moment, dtype=np.float64) + np.cross(center_of_pressure, force)
    return np.concatenate([torque, force])


def project_to_plane(
    point: np.ndarray,
    origin: np.ndarray,
    x_axis: np.ndarray,
    y_axis: np.ndarray,
) -> np.ndarray:
    """Coordinates [2] of a 3D point in the plane spanned by x_axis / y_axis."""
    offset = np.asarray(point, dtype=np.float64) - origin
    return np.array([np.dot(offset, x_axis), np.dot(offset, y_axis)])


def prepare_convex_2d_shape(
    points: Sequence[np.ndarray],
    origin: np.ndarray,
    x_axis: np.ndarray,
    y_axis: np.ndarray,
) -> np.ndarray:
    """
    Project 3D points to a plane and sort them counter-clockwise.

    Returns:
        Polygon vertices [N, 2], ordered by angle around their centroid.
    """
    if len(points) == 0:
        return np.zeros((0, 2))
    flat = np.stack([project_to_plane(p, origin, x_axis, y_axis) for p in points])
    centroid = flat.mean(axis=0)
    angles = np.arctan2(flat[:, 1] - centroid[1], flat[:, 0] - centroid[0])
    return flat[np.argsort(angles)]


def convex_2d_shape_contains(point: np.ndarray, shape: np.ndarray) -> bool:
    """
    Whether a 2D point lies inside (or on the border of) a convex polygon.

    Args:
        point: [2]
        shape: [N, 2] vertices in counter-clockwise order.
    """
    if shape.shape[0] < 3:
        return False
    for i in range(shape.shape[0]):
        a = shape[i]
        b = shape[(i + 1) % shape.shape[0]]
        cross = (b[0] - a[0]) * (point[1] - a[1]) - (b[1] - a[1]) * (point[0] - a[0])
        if cross < 0:
            return False
    return True


# Ground plane footprints are tested in world x/z
_PLANE_ORIGIN = np.zeros(3)
_PLANE_X = np.array([1.0, 0.0, 0.0])
_PLANE_Y = np.array([0.0, 0.0, 1.0])


def footprint_contains(point: np.ndarray, corners: List[np.ndarray]) -> bool:
    """Whether a world point lies over a ground footprint, ignoring height."""
    shape = prepare_convex_2d_shape(corners, _PLANE_ORIGIN, _PLANE_X, _PLANE_Y)
    flat = project_to_plane(point, _PLANE_ORIGIN, _PLANE_X, _PLANE_Y)
    return convex_2d_shape_contains(flat, shape)


def padded_bounding_rectangle(
    points: np.ndarray,
    padding: float,
    height: float,
) -> List[np.ndarray]:
    """
    Corners of the x/z bounding box of points, grown by padding.

    Args:
        points: [N, 3] world points.
        padding: Margin added on every side (m).
        height: y coordinate given to every corner.

    Returns:
        Four corners [3] in counter-clockwise order seen from above.
    """
    min_x = float(np.min(points[:, 0])) - padding
    max_x = float(np.max(points[:, 0])) + padding
    min_z = float(np.min(points[:, 2])) - padding
    max_z = float(np.max(points[:, 2])) + padding
    return [
        np.array([min_x, height, min_z]),
        np.array([max_x, height, min_z]),
        np.array([max_x, height, max_z]),
        np.array([min_x, height, max_z]),
    ]
