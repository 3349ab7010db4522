# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Measurement expressions and factors for manifold-factors.

This module defines the *measurement-level* building blocks: expression
builders that predict a measurement from variables, and the factors that
compare those predictions with actual measurements.

1. Expression builders
----------------------
    • `between(a, b)`:
        Relative pose a⁻¹ ∘ b between two pose expressions, in Pose3Chart.

    • `transform_to(pose, point)`:
        World point expressed in the pose frame:
            p_pose = Rᵀ (p_world − t)

    • `bearing(pose, point)`:
        Unit direction from the pose to the point, in the pose frame.

Builders accept expressions; combine them freely with
`Expression.apply` for new measurement models.

2. Factors
----------
    • `PriorFactor`:
        Unary prior on any variable:
            r = local(prior, x)

    • `BetweenFactor`:
        SE(3) odometry / loop closure between two poses:
            r = local(measured, a⁻¹ ∘ b)

    • `PoseLandmarkFactor`:
        Landmark position observed in the pose frame.

    • `PoseBearingFactor`:
        Bearing-only observation of a landmark.

All factors derive from `ExpressionFactor` (or its binary specialization)
and implement the expression hook, so they can be pickled and reloaded.

Notes
-----
When adding a new factor type:

    1. Write the prediction with `Expression.apply` on JAX functions.
    2. Subclass `ExpressionFactor2` and implement `build_expression`.
    3. Add a test that passes `numerical.linearization.check_factor_jacobians`.
"""

from __future__ import annotations
from typing import Any, Optional

import jax.numpy as jnp

from ..core.expression import Expression
from ..core.expression_factor import ExpressionFactor, ExpressionFactor2
from ..core.math3d import relative_pose_se3, transform_to_se3
from ..core.noise_model import NoiseModel
from ..core.types import Key
from .manifold import ChartSpec, EuclideanChart, Pose3Chart, default_chart, get_chart


def _safe_normalize(v: jnp.ndarray) -> jnp.ndarray:
    n = jnp.linalg.norm(v)
    return v / (n + 1e-12)


def between(a: Expression, b: Expression) -> Expression:
    """Relative pose a⁻¹ ∘ b."""
    return Expression.apply(relative_pose_se3, a, b, chart=Pose3Chart())


def transform_to(pose: Expression, point: Expression) -> Expression:
    """Point in the frame of `pose`."""
    return Expression.apply(transform_to_se3, pose, point, chart=EuclideanChart(3))


def bearing(pose: Expression, point: Expression) -> Expression:
    """
    Direction to `point` seen from `pose`, as a unit 3-vector.

    The output is measured with a Euclidean chart on ℝ³, so the residual of
    a bearing factor is the difference of two unit vectors.
    """
    def _bearing(p, l):
        return _safe_normalize(transform_to_se3(p, l))

    return Expression.apply(_bearing, pose, point, chart=EuclideanChart(3))


class PriorFactor(ExpressionFactor):
    """
    Prior on a single variable:
        residual = local(prior, x)
    Works for any chart; the chart defaults to the one inferred from the
    prior value.
    """

    def __init__(
        self,
        key: Key,
        prior: Any,
        noise_model: Optional[NoiseModel],
        chart: Optional[ChartSpec] = None,
    ) -> None:
        self._prior_chart = default_chart(prior) if chart is None else get_chart(chart)
        super().__init__(noise_model, prior, keys=(key,))

    def expression(self) -> Expression:
        return Expression.leaf(self._keys[0], self._prior_chart)

    def __getstate__(self):
        state = super().__getstate__()
        state["chart"] = self._prior_chart
        return state

    def __setstate__(self, state):
        self._prior_chart = state["chart"]
        super().__setstate__(state)


class BetweenFactor(ExpressionFactor2):
    """
    SE(3) relative pose constraint between two poses:

        residual = local(measured, relative_pose_se3(pose1, pose2))

    pose1, pose2, measured: [tx, ty, tz, wx, wy, wz]
    """

    def build_expression(self, key1: Key, key2: Key) -> Expression:
        return between(
            Expression.leaf(key1, Pose3Chart()),
            Expression.leaf(key2, Pose3Chart()),
        )


class PoseLandmarkFactor(ExpressionFactor2):
    """
    Landmark position measured in the pose frame.

    key1: pose in se(3) vector form, key2: landmark in ℝ³
    residual = Rᵀ (landmark − t) − measured
    """

    def build_expression(self, key1: Key, key2: Key) -> Expression:
        return transform_to(
            Expression.leaf(key1, Pose3Chart()),
            Expression.leaf(key2, EuclideanChart(3)),
        )


class PoseBearingFactor(ExpressionFactor2):
    """
    Bearing-only constraint between a pose and a 3D landmark.

    The measured bearing is normalized on construction.
    """

    def __init__(
        self,
        key1: Key,
        key2: Key,
        noise_model: Optional[NoiseModel],
        measured: Any,
    ) -> None:
        super().__init__(key1, key2, noise_model, _safe_normalize(jnp.asarray(measured, dtype=float)))

    def build_expression(self, key1: Key, key2: Key) -> Expression:
        return bearing(
            Expression.leaf(key1, Pose3Chart()),
            Expression.leaf(key2, EuclideanChart(3)),
        )
