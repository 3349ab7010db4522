# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Charts for manifold-valued variables in manifold-factors.

A chart ties a manifold value to its tangent space through two maps:

    • retract(x, d): base point + tangent vector -> nearby point
    • local(x, y):   base point + point -> tangent vector

with the round-trip contract ``local(x, retract(x, d)) == d`` for small ``d``.
Every differentiation routine in the package (finite differences, expression
Jacobians, the linearization harness) perturbs values only through a chart,
so variables never need to live in a flat vector space.

Charts provided:

    • `ScalarChart`     Python / 0-d floats, tangent dimension 1
    • `EuclideanChart`  1-D vectors ℝⁿ, retract = x + d, local = y − x
    • `Rot3Chart`       3×3 rotation matrices, R·Exp(d) / Log(Rᵀ R')
    • `Pose3Chart`      6-vector poses [t, w], x ∘ d / x⁻¹ ∘ y

Chart metadata helpers:

    • `TYPE_TO_CHART`   (str → chart factory, e.g. "pose_se3" → Pose3Chart)
    • `get_chart`       resolve a chart from a Chart, a type name or a dim
    • `default_chart`   infer a chart from a plain value

Notes
-----
All maps are written with `jax.numpy`, so they can be traced by `jax.jacfwd`
inside `core.expression.Expression`. To support a new manifold, subclass
`Chart`, implement the two maps, and register a type name in
`TYPE_TO_CHART`.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Union

import jax.numpy as jnp

from ..core.math3d import compose_pose_se3, relative_pose_se3, so3_exp, so3_log


class Chart:
    """Base chart: a fixed tangent dimension plus retract / local maps."""

    dim: int = 0

    def retract(self, x: Any, d: jnp.ndarray) -> Any:
        raise NotImplementedError

    def local(self, x: Any, y: Any) -> jnp.ndarray:
        raise NotImplementedError

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.dim == other.dim

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.dim))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(dim={self.dim})"


class ScalarChart(Chart):
    """Chart for scalar values; tangent vectors have length 1."""

    dim = 1

    def retract(self, x, d):
        return x + jnp.reshape(d, (1,))[0]

    def local(self, x, y):
        return jnp.reshape(y - x, (1,))


class EuclideanChart(Chart):
    """Trivial chart on ℝⁿ."""

    def __init__(self, dim: int) -> None:
        if dim < 0:
            raise ValueError(f"EuclideanChart dimension must be >= 0, got {dim}")
        self.dim = int(dim)

    def retract(self, x, d):
        return jnp.ravel(x) + jnp.ravel(d)

    def local(self, x, y):
        return jnp.ravel(y) - jnp.ravel(x)


class Rot3Chart(Chart):
    """Right-multiplicative chart on SO(3) for 3×3 rotation matrices."""

    dim = 3

    def retract(self, x, d):
        return jnp.asarray(x) @ so3_exp(d)

    def local(self, x, y):
        return so3_log(jnp.asarray(x).T @ jnp.asarray(y))


class Pose3Chart(Chart):
    """
    Chart on SE(3) for poses stored as [tx, ty, tz, wx, wy, wz].

    retract(x, d) = x ∘ d and local(x, y) = x⁻¹ ∘ y, so the translation part
    of the tangent vector lives in the body frame of x.
    """

    dim = 6

    def retract(self, x, d):
        return compose_pose_se3(x, d)

    def local(self, x, y):
        return relative_pose_se3(x, y)


ChartSpec = Union[Chart, str, int]

TYPE_TO_CHART: Dict[str, Callable[[], Chart]] = {
    "scalar": ScalarChart,
    "place1d": lambda: EuclideanChart(1),
    "point2": lambda: EuclideanChart(2),
    "point3": lambda: EuclideanChart(3),
    "landmark3d": lambda: EuclideanChart(3),
    "rot3": Rot3Chart,
    "pose_se3": Pose3Chart,
}


def get_chart(spec: ChartSpec) -> Chart:
    """
    Resolve a chart from:

      - a `Chart` instance (returned as is)
      - a registered type name, e.g. "pose_se3"
      - an int dimension, giving `EuclideanChart(dim)`
    """
    if isinstance(spec, Chart):
        return spec
    if isinstance(spec, str):
        try:
            return TYPE_TO_CHART[spec]()
        except KeyError:
            raise KeyError(f"No chart registered for variable type '{spec}'") from None
    if isinstance(spec, int) and not isinstance(spec, bool):
        return EuclideanChart(spec)
    raise TypeError(f"Cannot build a chart from {spec!r}")


def default_chart(value: Any) -> Chart:
    """
    Infer a chart from a plain value: scalars get `ScalarChart`, 1-D arrays
    get `EuclideanChart`. Works on JAX tracers since only the shape is used.
    """
    shape = jnp.shape(value)
    if len(shape) == 0:
        return ScalarChart()
    if len(shape) == 1:
        return EuclideanChart(shape[0])
    raise TypeError(
        f"No default chart for a value of shape {shape}; pass a chart explicitly"
    )
