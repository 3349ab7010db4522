# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Finite-difference derivatives of functions on manifolds.

Every routine perturbs its argument in tangent coordinates through a chart
and measures manifold-valued outputs in the tangent space at the
unperturbed output:

    column j = ( local(y0, h(retract(x, +δ e_j)))
               - local(y0, h(retract(x, -δ e_j))) ) / (2 δ)

Central differences cancel the first-order truncation term, so the error is
O(δ²) instead of the O(δ) of one-sided differences.

Key Functions
-------------
numerical_gradient(h, x)
    Gradient of a scalar function, length N.

numerical_derivative11(h, x)
    Jacobian M × N of h: X -> Y.

numerical_derivative(h, args, argnum)
    Partial Jacobian with respect to one argument of a multi-argument
    function; all other arguments are held fixed. The two-digit wrappers
    `numerical_derivative21` … `numerical_derivative33` name the arity and
    the differentiated argument.

numerical_hessian(f, x)
    Jacobian of the gradient map x ↦ numerical_gradient(f, x).

numerical_hessian_partial(f, args, i, j)
    ∂²f / ∂x_i ∂x_j as the derivative with respect to x_j of the gradient
    with respect to x_i (shape N_i × N_j). Wrapped as
    `numerical_hessian211` … `numerical_hessian333`.

Notes
-----
The step `delta` is chosen by the caller (default 1e-5) and never adapted.
Charts default to `slam.manifold.default_chart`, i.e. scalars and 1-D
vectors are handled without passing charts; poses and rotations need an
explicit chart.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Sequence

import jax.numpy as jnp

from ..logger import manifold_factors_logger
from ..slam.manifold import Chart, EuclideanChart, default_chart

DEFAULT_DELTA = 1e-5

ChartSeq = Optional[Sequence[Optional[Chart]]]


def _check_delta(delta: float) -> float:
    delta = float(delta)
    if not delta > 0.0:
        raise ValueError(f"Finite-difference step must be positive, got {delta}")
    return delta


def _warn_if_not_finite(result: jnp.ndarray, name: str) -> jnp.ndarray:
    if not bool(jnp.all(jnp.isfinite(result))):
        manifold_factors_logger.warning("Non-finite values encountered in %s.", name)
    return result


def _as_scalar(value: Any) -> jnp.ndarray:
    v = jnp.asarray(value)
    if v.size != 1:
        raise TypeError(
            f"numerical_gradient expects a scalar-valued function; got shape {v.shape}"
        )
    return jnp.reshape(v, ())


def _basis(n: int, j: int, delta: float) -> jnp.ndarray:
    return jnp.zeros(n).at[j].set(delta)


def numerical_gradient(
    h: Callable[[Any], Any],
    x: Any,
    delta: float = DEFAULT_DELTA,
    chart: Optional[Chart] = None,
) -> jnp.ndarray:
    """Numerically compute the gradient of a scalar function.

    Args:
        h: Scalar-valued function of one manifold argument.
        x: Point at which to evaluate the gradient.
        delta: Perturbation step in tangent coordinates.
        chart: Chart of `x`; inferred from `x` when omitted.

    Returns:
        A length-N vector, N being the tangent dimension of `x`.

    Raises:
        TypeError: If `h` does not return a scalar.
        ValueError: If `delta` is not positive.
    """
    delta = _check_delta(delta)
    chart = chart or default_chart(x)
    n = chart.dim
    factor = 1.0 / (2.0 * delta)

    g = []
    for j in range(n):
        d = _basis(n, j, delta)
        h_plus = _as_scalar(h(chart.retract(x, d)))
        h_minus = _as_scalar(h(chart.retract(x, -d)))
        g.append((h_plus - h_minus) * factor)

    if not g:
        return jnp.zeros((0,))
    return _warn_if_not_finite(jnp.stack(g), "numerical_gradient")


def numerical_derivative11(
    h: Callable[[Any], Any],
    x: Any,
    delta: float = DEFAULT_DELTA,
    chart_x: Optional[Chart] = None,
    chart_y: Optional[Chart] = None,
) -> jnp.ndarray:
    """Numerically compute the Jacobian of a manifold-valued function.

    Args:
        h: Function X -> Y.
        x: Point at which to evaluate the Jacobian.
        delta: Perturbation step in tangent coordinates.
        chart_x: Chart of the argument; inferred from `x` when omitted.
        chart_y: Chart of the output; inferred from ``h(x)`` when omitted.

    Returns:
        An M × N matrix, M and N being the tangent dimensions of Y and X.
    """
    delta = _check_delta(delta)
    chart_x = chart_x or default_chart(x)

    hx = h(x)
    chart_y = chart_y or default_chart(hx)
    m = chart_y.dim
    n = chart_x.dim
    factor = 1.0 / (2.0 * delta)

    cols = []
    for j in range(n):
        dx = _basis(n, j, delta)
        dy1 = chart_y.local(hx, h(chart_x.retract(x, dx)))
        dy2 = chart_y.local(hx, h(chart_x.retract(x, -dx)))
        cols.append(jnp.reshape(dy1 - dy2, (m,)) * factor)

    if not cols:
        return jnp.zeros((m, 0))
    return _warn_if_not_finite(jnp.stack(cols, axis=1), "numerical_derivative")


def _fix_all_but(h: Callable[..., Any], args: Sequence[Any], argnum: int) -> Callable[[Any], Any]:
    """Curry `h` so only argument `argnum` varies."""
    args = tuple(args)
    if not 0 <= argnum < len(args):
        raise IndexError(f"argnum {argnum} out of range for {len(args)} arguments")

    def h_partial(x):
        return h(*args[:argnum], x, *args[argnum + 1:])

    return h_partial


def _chart_at(charts: ChartSeq, i: int) -> Optional[Chart]:
    if charts is None:
        return None
    return charts[i]


def numerical_derivative(
    h: Callable[..., Any],
    args: Sequence[Any],
    argnum: int,
    delta: float = DEFAULT_DELTA,
    charts: ChartSeq = None,
    chart_y: Optional[Chart] = None,
) -> jnp.ndarray:
    """
    Jacobian of h(*args) with respect to args[argnum], all other arguments
    held fixed.

    `charts`, when given, holds one chart (or None) per argument.
    """
    h_partial = _fix_all_but(h, args, argnum)
    return numerical_derivative11(
        h_partial, args[argnum], delta, _chart_at(charts, argnum), chart_y
    )


def numerical_derivative21(h, x1, x2, delta=DEFAULT_DELTA, charts=None, chart_y=None):
    """Derivative of h(x1, x2) with respect to x1."""
    return numerical_derivative(h, (x1, x2), 0, delta, charts, chart_y)


def numerical_derivative22(h, x1, x2, delta=DEFAULT_DELTA, charts=None, chart_y=None):
    """Derivative of h(x1, x2) with respect to x2."""
    return numerical_derivative(h, (x1, x2), 1, delta, charts, chart_y)


def numerical_derivative31(h, x1, x2, x3, delta=DEFAULT_DELTA, charts=None, chart_y=None):
    """Derivative of h(x1, x2, x3) with respect to x1."""
    return numerical_derivative(h, (x1, x2, x3), 0, delta, charts, chart_y)


def numerical_derivative32(h, x1, x2, x3, delta=DEFAULT_DELTA, charts=None, chart_y=None):
    """Derivative of h(x1, x2, x3) with respect to x2."""
    return numerical_derivative(h, (x1, x2, x3), 1, delta, charts, chart_y)


def numerical_derivative33(h, x1, x2, x3, delta=DEFAULT_DELTA, charts=None, chart_y=None):
    """Derivative of h(x1, x2, x3) with respect to x3."""
    return numerical_derivative(h, (x1, x2, x3), 2, delta, charts, chart_y)


def numerical_hessian(
    f: Callable[[Any], Any],
    x: Any,
    delta: float = DEFAULT_DELTA,
    chart: Optional[Chart] = None,
) -> jnp.ndarray:
    """
    Hessian of a scalar function: the derivative of the gradient map

        x ↦ numerical_gradient(f, x)

    evaluated with the same step.
    """
    chart = chart or default_chart(x)

    def gradient_at(x_):
        return numerical_gradient(f, x_, delta, chart)

    return numerical_derivative11(gradient_at, x, delta, chart, EuclideanChart(chart.dim))


def numerical_hessian_partial(
    f: Callable[..., Any],
    args: Sequence[Any],
    i: int,
    j: int,
    delta: float = DEFAULT_DELTA,
    charts: ChartSeq = None,
) -> jnp.ndarray:
    """
    Second derivative ∂²f / ∂x_i ∂x_j of a scalar function of several
    arguments.

    Built as the derivative with respect to x_j of the function that
    returns the gradient with respect to x_i; the result has shape
    N_i × N_j. For i == j this is the Hessian block of argument i.
    """
    args = tuple(args)
    chart_i = _chart_at(charts, i) or default_chart(args[i])

    def gradient_i(*a):
        return numerical_gradient(_fix_all_but(f, a, i), a[i], delta, chart_i)

    return numerical_derivative(
        gradient_i, args, j, delta, charts, EuclideanChart(chart_i.dim)
    )


def numerical_hessian211(f, x1, x2, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x1² for f(x1, x2)."""
    return numerical_hessian_partial(f, (x1, x2), 0, 0, delta, charts)


def numerical_hessian212(f, x1, x2, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x1∂x2 for f(x1, x2)."""
    return numerical_hessian_partial(f, (x1, x2), 0, 1, delta, charts)


def numerical_hessian222(f, x1, x2, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x2² for f(x1, x2)."""
    return numerical_hessian_partial(f, (x1, x2), 1, 1, delta, charts)


def numerical_hessian311(f, x1, x2, x3, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x1² for f(x1, x2, x3)."""
    return numerical_hessian_partial(f, (x1, x2, x3), 0, 0, delta, charts)


def numerical_hessian312(f, x1, x2, x3, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x1∂x2 for f(x1, x2, x3)."""
    return numerical_hessian_partial(f, (x1, x2, x3), 0, 1, delta, charts)


def numerical_hessian313(f, x1, x2, x3, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x1∂x3 for f(x1, x2, x3)."""
    return numerical_hessian_partial(f, (x1, x2, x3), 0, 2, delta, charts)


def numerical_hessian322(f, x1, x2, x3, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x2² for f(x1, x2, x3)."""
    return numerical_hessian_partial(f, (x1, x2, x3), 1, 1, delta, charts)


def numerical_hessian323(f, x1, x2, x3, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x2∂x3 for f(x1, x2, x3)."""
    return numerical_hessian_partial(f, (x1, x2, x3), 1, 2, delta, charts)


def numerical_hessian333(f, x1, x2, x3, delta=DEFAULT_DELTA, charts=None):
    """∂²f/∂x3² for f(x1, x2, x3)."""
    return numerical_hessian_partial(f, (x1, x2, x3), 2, 2, delta, charts)
