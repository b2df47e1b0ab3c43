"""
Robust two-view relative pose estimators.

Both share the same result type; the refractive one consumes per-observation virtual
cameras and recovers the baseline length as well.
"""

from refracam.estimators.two_view import (
    TwoViewGeometry,
    TwoViewGeometryOptions,
    estimate_calibrated_two_view_geometry,
    estimate_refractive_two_view_geometry,
)

__all__ = [
    "TwoViewGeometry",
    "TwoViewGeometryOptions",
    "estimate_calibrated_two_view_geometry",
    "estimate_refractive_two_view_geometry",
]
