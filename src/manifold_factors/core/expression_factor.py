# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Factors defined by an `Expression` and a measurement.

`ExpressionFactor` predicts a measurement with a composed JAX expression and
measures the prediction in the tangent space of the measurement:

    r(x) = local(measured, h(x))

so the residual is well defined when the measured type is not a vector
space (poses, rotations). Jacobians come from the expression in one pass
and are chained with the derivative of `local(measured, ·)`; the result is
whitened by the noise model into a `LinearSystem`.

Construction checks
-------------------
Construction fails immediately with `ValueError` when:
    - no noise model is supplied
    - the noise model dimension differs from the output dimension
      (the tangent dimension of the measurement chart)

Serialization
-------------
Compiled JAX functions cannot be pickled, so a factor is pickled as
(noise model, measurement, keys) and the expression is rebuilt on load by
`expression()`. The base class does not know how to do that and raises
`NotImplementedError`; concrete factors (see `slam.measurements`) override
it, or `build_expression(key1, key2)` for binary factors.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp

from .expression import Expression
from .factor_graph import NoiseModelFactor
from .noise_model import NoiseModel
from .types import Key, format_key
from .values import Values
from ..slam.manifold import EuclideanChart, ScalarChart, default_chart


class ExpressionFactor(NoiseModelFactor):
    """
    Factor that supports arbitrary expressions via JAX autodiff.

    When `expression` is omitted it is taken from `expression()`, so
    subclasses only set the state that hook needs before calling
    ``super().__init__``.
    """

    def __init__(
        self,
        noise_model: Optional[NoiseModel],
        measured: Any,
        expression: Optional[Expression] = None,
        keys: Sequence[Key] = (),
    ) -> None:
        if noise_model is None:
            raise ValueError("ExpressionFactor: no NoiseModel.")
        super().__init__(noise_model, keys)
        self._measured = measured
        self._expression: Optional[Expression] = None
        self._dims: Tuple[int, ...] = ()
        self._initialize(expression if expression is not None else self.expression())

    def _initialize(self, expression: Expression) -> None:
        if self._noise_model is None:
            raise ValueError("ExpressionFactor: no NoiseModel.")

        chart = expression.chart or default_chart(self._measured)
        if self._noise_model.dim != chart.dim:
            raise ValueError(
                "ExpressionFactor was created with a NoiseModel of incorrect dimension: "
                f"noise model has {self._noise_model.dim}, measurement has {chart.dim}."
            )

        expr_keys, expr_dims = expression.keys_and_dims()
        if self._keys:
            if set(self._keys) != set(expr_keys) or len(self._keys) != len(expr_keys):
                declared = ", ".join(format_key(k) for k in self._keys)
                found = ", ".join(format_key(k) for k in expr_keys)
                raise ValueError(
                    f"Expression depends on keys [{found}] but the factor declares [{declared}]"
                )
            dims = tuple(expression.leaf_chart(k).dim for k in self._keys)
        else:
            self._keys = expr_keys
            dims = expr_dims

        self._expression = expression
        self._dims = dims
        self._chart = chart
        self._local_jacobian_fn = self._build_local_jacobian_fn()

    def _build_local_jacobian_fn(self):
        chart = self._chart
        if isinstance(chart, (EuclideanChart, ScalarChart)):
            return None
        measured = jnp.asarray(self._measured)

        def local_jacobian(value):
            def local_at(xi):
                return chart.local(measured, chart.retract(value, xi))
            return jax.jacfwd(local_at)(jnp.zeros(chart.dim))

        return jax.jit(local_jacobian)

    # --- Accessors ---

    @property
    def measured(self) -> Any:
        """The measurement compared with the expression."""
        return self._measured

    @property
    def dims(self) -> Tuple[int, ...]:
        return self._dims

    @property
    def dim(self) -> int:
        return self._chart.dim

    def expression(self) -> Expression:
        """
        Recreate the expression from the stored keys and measurement.

        Needed to unpickle a derived factor.
        """
        raise NotImplementedError(
            "ExpressionFactor.expression not provided: cannot deserialize."
        )

    # --- Evaluation ---

    def unwhitened_error(self, values: Values) -> jnp.ndarray:
        value = self._expression.value(values)
        return self._chart.local(self._measured, value)

    def unwhitened_error_and_jacobians(
        self, values: Values
    ) -> Tuple[jnp.ndarray, List[jnp.ndarray]]:
        """
        Error and one Jacobian block per key, in declared key order.

        The expression is evaluated once; its blocks are chained with the
        derivative of local(measured, ·) at the predicted value.
        """
        value, H = self._expression.value_and_jacobians(values, self._keys, self._dims)
        e = self._chart.local(self._measured, value)
        if self._local_jacobian_fn is not None:
            D = self._local_jacobian_fn(value)
            H = [D @ Hk for Hk in H]
        return e, H

    # --- Testable / serialization ---

    def equals(self, other: Any, tol: float = 1e-9) -> bool:
        return (
            type(other) is type(self)
            and other.keys == self.keys
            and other.dims == self.dims
            and self._noise_model.equals(other.noise_model, tol)
            and bool(jnp.allclose(jnp.asarray(self._measured), jnp.asarray(other.measured), atol=tol))
        )

    def __getstate__(self) -> Dict[str, Any]:
        return {
            "noise_model": self._noise_model,
            "measured": self._measured,
            "keys": self._keys,
        }

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self._noise_model = state["noise_model"]
        self._measured = state["measured"]
        self._keys = tuple(state["keys"])
        self._expression = None
        self._dims = ()
        self._initialize(self.expression())

    def __repr__(self) -> str:
        keys = ", ".join(format_key(k) for k in self._keys)
        return (
            f"{type(self).__name__}(keys=[{keys}], measured={self._measured!r}, "
            f"noise_model={self._noise_model!r})"
        )


class ExpressionFactor2(ExpressionFactor):
    """
    Binary specialization of ExpressionFactor meant as a base class for
    binary factors.

    Subclasses implement `build_expression(key1, key2)`; the factor keeps
    the declared key order (key1, key2) for its Jacobian blocks and provides
    `evaluate_error` for code written against two typed arguments.
    """

    def __init__(
        self,
        key1: Key,
        key2: Key,
        noise_model: Optional[NoiseModel],
        measured: Any,
    ) -> None:
        super().__init__(noise_model, measured, keys=(key1, key2))

    def build_expression(self, key1: Key, key2: Key) -> Expression:
        """Return an expression that predicts the measurement given Values."""
        raise NotImplementedError(
            "ExpressionFactor2.build_expression not provided: cannot deserialize."
        )

    def expression(self) -> Expression:
        return self.build_expression(self._keys[0], self._keys[1])

    def evaluate_error(self, a1: Any, a2: Any, compute_jacobians: bool = False):
        """
        Error given the two variables directly.

        Returns the error vector, or ``(error, (H1, H2))`` when
        `compute_jacobians` is set.
        """
        key1, key2 = self._keys
        values = Values()
        values.insert(key1, a1, self._expression.leaf_chart(key1))
        values.insert(key2, a2, self._expression.leaf_chart(key2))
        if not compute_jacobians:
            return self.unwhitened_error(values)
        e, H = self.unwhitened_error_and_jacobians(values)
        return e, (H[0], H[1])
