# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Numerical linearization of factors and Jacobian cross-checks.

This module is the correctness contract for factors with analytic
derivatives: a factor is linearized twice at the same `Values`,

    1. by its own `linearize` (analytic Jacobians, whitened), and
    2. by central finite differences of its unwhitened error,

and the two linear systems are compared block by block.

Key Concepts
------------
numerical_linearization(factor, values, fd_step)
    Builds a `LinearSystem` from finite differences only. The factor is
    used through two members, `keys` and `unwhitened_error(values)`, and
    the container through `dim(key)`, `zero_vectors()` and `retract(delta)`.
    Nothing about how the factor computes its own derivatives is used, so
    the result is an independent oracle.

JacobianCheckConfig
    Dataclass holding the cross-check settings:
    - fd_step: finite-difference step
    - tolerance: absolute elementwise tolerance
    - compare_rhs: compare the two right-hand sides with each other
    - expect_zero_rhs: additionally require both right-hand sides ≈ 0

check_factor_jacobians(factor, values, fd_step, tolerance)
    Runs both linearizations and raises `JacobianCheckError` listing every
    mismatch; returns True otherwise, so it reads naturally in tests:

        assert check_factor_jacobians(factor, values, 1e-5, 1e-6)

Notes
-----
Pick `tolerance` no tighter than O(fd_step²) times the scale of the second
derivatives of the error: that is the truncation error of the central
difference.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional

import jax.numpy as jnp

from ..core.types import LinearSystem, format_key
from ..core.values import Values
from ..logger import manifold_factors_logger


class JacobianCheckError(AssertionError):
    """Analytic and numerical linearizations disagree."""


@dataclass
class JacobianCheckConfig:
    fd_step: float = 1e-5
    tolerance: float = 1e-5
    compare_rhs: bool = True
    expect_zero_rhs: bool = False


def numerical_linearization(factor, values: Values, fd_step: float = 1e-5) -> LinearSystem:
    """
    Linearize `factor` at `values` by central differences of its
    unwhitened error.

    Returns:
        LinearSystem with one block per factor key (columns in tangent
        coordinate order), right-hand side -e, and no noise model.
    """
    if not fd_step > 0.0:
        raise ValueError(f"fd_step must be positive, got {fd_step}")

    e = jnp.ravel(jnp.asarray(factor.unwhitened_error(values)))
    rows = e.shape[0]
    factor_scale = 1.0 / (2.0 * fd_step)

    dX = values.zero_vectors()
    blocks = []
    for key in factor.keys:
        cols = dX.dim(key)
        zero = dX[key]
        columns = []
        for col in range(cols):
            dx = zero.at[col].set(fd_step)
            left = factor.unwhitened_error(values.retract(dX.with_entry(key, dx)))
            right = factor.unwhitened_error(values.retract(dX.with_entry(key, -dx)))
            columns.append((jnp.ravel(left) - jnp.ravel(right)) * factor_scale)
        J = jnp.stack(columns, axis=1) if columns else jnp.zeros((rows, 0))
        blocks.append(J)

    manifold_factors_logger.debug(
        "Numerically linearized %r: %d rows, dims %s",
        factor, rows, [b.shape[1] for b in blocks],
    )
    return LinearSystem(factor.keys, blocks, -e)


def _max_abs_diff(a: jnp.ndarray, b: jnp.ndarray) -> float:
    if a.size == 0:
        return 0.0
    return float(jnp.max(jnp.abs(a - b)))


def _same_carried_model(a, b) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.equals(b)


def check_factor_jacobians(
    factor,
    values: Values,
    fd_step: float = 1e-5,
    tolerance: float = 1e-5,
    cfg: Optional[JacobianCheckConfig] = None,
) -> bool:
    """
    Compare `factor.linearize(values)` with `numerical_linearization`.

    The numerical system is whitened with the factor's noise model (when it
    has one) so both systems live in the same units. Jacobian blocks are
    compared key by key within `tolerance`, and both systems must carry the
    same constrained-row model (or none); see `JacobianCheckConfig` for
    the right-hand side checks. `cfg`, when given, overrides `fd_step` and
    `tolerance`.

    Raises:
        JacobianCheckError: On any mismatch, or if the factor is inactive.
    """
    if cfg is None:
        cfg = JacobianCheckConfig(fd_step=fd_step, tolerance=tolerance)
    tol = cfg.tolerance

    actual = factor.linearize(values)
    if actual is None:
        manifold_factors_logger.warning("%r is inactive; nothing to check", factor)
        raise JacobianCheckError(f"{factor!r} is inactive at the given values")

    expected = numerical_linearization(factor, values, cfg.fd_step)
    noise_model = getattr(factor, "noise_model", None)
    if noise_model is not None:
        expected = expected.whiten(noise_model)

    failures: List[str] = []

    if actual.keys != expected.keys:
        failures.append(
            "key order differs: linearize gives "
            f"[{', '.join(map(format_key, actual.keys))}], expected "
            f"[{', '.join(map(format_key, expected.keys))}]"
        )
    else:
        for key, A, E in zip(actual.keys, actual.blocks, expected.blocks):
            if A.shape != E.shape:
                failures.append(
                    f"block {format_key(key)}: shape {A.shape}, expected {E.shape}"
                )
            elif not bool(jnp.allclose(A, E, rtol=0.0, atol=tol)):
                failures.append(
                    f"block {format_key(key)}: max abs difference "
                    f"{_max_abs_diff(A, E):.3e} > {tol:.3e}\n"
                    f"  linearize:\n{A}\n  numerical:\n{E}"
                )

    if not _same_carried_model(actual.noise_model, expected.noise_model):
        failures.append(
            f"noise model: linearize carries {actual.noise_model!r}, "
            f"expected {expected.noise_model!r}"
        )

    if cfg.compare_rhs:
        if actual.b.shape != expected.b.shape:
            failures.append(f"rhs: shape {actual.b.shape}, expected {expected.b.shape}")
        elif not bool(jnp.allclose(actual.b, expected.b, rtol=0.0, atol=tol)):
            failures.append(
                f"rhs: max abs difference {_max_abs_diff(actual.b, expected.b):.3e} > {tol:.3e}"
            )

    if cfg.expect_zero_rhs:
        for name, b in (("linearize", actual.b), ("numerical", expected.b)):
            if not bool(jnp.allclose(b, jnp.zeros_like(b), rtol=0.0, atol=tol)):
                failures.append(f"{name} rhs is not zero: {b}")

    if failures:
        raise JacobianCheckError(
            f"Jacobian check failed for {factor!r}:\n" + "\n".join(failures)
        )

    manifold_factors_logger.debug("Jacobian check passed for %r", factor)
    return True
