# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Expressions: composed prediction functions with automatic Jacobians.

An `Expression` is a small tree whose leaves read variables from a `Values`
container (or hold constants) and whose inner nodes apply plain JAX
functions to the values of their children. Because every node is written
in `jax.numpy`, the whole tree is differentiable by JAX.

Jacobians are taken with respect to the tangent space of each leaf:

    J_k = ∂/∂δ  local_y0( f(..., retract(x_k, δ), ...) )   at δ = 0

where ``y0 = f(x)`` and ``local_y0`` is the output chart's local map at
``y0``. This matches how `numerical.derivatives` perturbs arguments, so an
expression Jacobian and a finite-difference Jacobian of the same function
are directly comparable.

Key Features
------------
• Declarative construction:
    Expression.leaf(key, chart)
    Expression.constant(value)
    Expression.apply(fn, *children, chart=...)

• Fixed keys and dims:
    `keys_and_dims()` lists the sorted leaf keys and their tangent
    dimensions; they never change after construction.

• Compiled Jacobians:
    `value_and_jacobians` builds one `jax.jit`-compiled function per key
    order and reuses it on every call.

Notes
-----
Forward mode (`jax.jacfwd`) is used on purpose: the small-angle branches in
`core.math3d` select between two formulas, and only forward mode keeps the
unused branch from contaminating the derivative.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp

from .types import Key, format_key
from .values import Values
from ..slam.manifold import Chart, ChartSpec, default_chart, get_chart

_LEAF = "leaf"
_CONSTANT = "constant"
_APPLY = "apply"


class Expression:
    """Tree of JAX functions over variables stored in `Values`."""

    def __init__(
        self,
        kind: str,
        chart: Optional[Chart] = None,
        key: Optional[Key] = None,
        constant: Any = None,
        fn: Optional[Callable[..., Any]] = None,
        children: Sequence["Expression"] = (),
    ) -> None:
        self._kind = kind
        self._chart = chart
        self._key = key
        self._constant = constant
        self._fn = fn
        self._children: Tuple[Expression, ...] = tuple(children)
        self._leaf_charts = self._collect_leaf_charts()
        self._jacobian_fns: Dict[Tuple[Key, ...], Callable] = {}

    # --- Construction ---

    @classmethod
    def leaf(cls, key: Key, chart: ChartSpec) -> "Expression":
        """Variable `key`, whose tangent space is given by `chart`."""
        return cls(_LEAF, chart=get_chart(chart), key=key)

    @classmethod
    def constant(cls, value: Any, chart: Optional[ChartSpec] = None) -> "Expression":
        c = None if chart is None else get_chart(chart)
        return cls(_CONSTANT, chart=c, constant=value)

    @classmethod
    def apply(
        cls,
        fn: Callable[..., Any],
        *children: Any,
        chart: Optional[ChartSpec] = None,
    ) -> "Expression":
        """
        Node computing ``fn(*child_values)``. Non-expression children are
        wrapped as constants.
        """
        nodes = [c if isinstance(c, Expression) else cls.constant(c) for c in children]
        c = None if chart is None else get_chart(chart)
        return cls(_APPLY, chart=c, fn=fn, children=nodes)

    def _collect_leaf_charts(self) -> Dict[Key, Chart]:
        if self._kind == _LEAF:
            return {self._key: self._chart}
        charts: Dict[Key, Chart] = {}
        for child in self._children:
            for key, chart in child._leaf_charts.items():
                if key in charts and charts[key] != chart:
                    raise ValueError(
                        f"Key {format_key(key)} used with two charts: {charts[key]} and {chart}"
                    )
                charts[key] = chart
        return charts

    # --- Structure ---

    @property
    def chart(self) -> Optional[Chart]:
        """Output chart, or None when it is inferred from the value."""
        return self._chart

    def keys(self) -> Tuple[Key, ...]:
        return tuple(sorted(self._leaf_charts))

    def keys_and_dims(self) -> Tuple[Tuple[Key, ...], Tuple[int, ...]]:
        keys = self.keys()
        return keys, tuple(self._leaf_charts[k].dim for k in keys)

    def leaf_chart(self, key: Key) -> Chart:
        try:
            return self._leaf_charts[key]
        except KeyError:
            raise KeyError(f"Expression does not depend on key {format_key(key)}") from None

    # --- Evaluation ---

    def _evaluate(self, env: Dict[Key, Any]) -> Any:
        if self._kind == _LEAF:
            return env[self._key]
        if self._kind == _CONSTANT:
            return self._constant
        return self._fn(*(child._evaluate(env) for child in self._children))

    def _environment(self, values: Values) -> Dict[Key, Any]:
        env = {}
        for key, chart in self._leaf_charts.items():
            if values.chart(key) != chart:
                raise ValueError(
                    f"Chart mismatch for key {format_key(key)}: expression uses {chart}, "
                    f"values store {values.chart(key)}"
                )
            env[key] = jnp.asarray(values.at(key))
        return env

    def value(self, values: Values) -> Any:
        return self._evaluate(self._environment(values))

    def value_and_jacobians(
        self,
        values: Values,
        keys: Optional[Sequence[Key]] = None,
        dims: Optional[Sequence[int]] = None,
    ) -> Tuple[Any, List[jnp.ndarray]]:
        """
        Evaluate the expression and its Jacobian blocks in one pass.

        Args:
            values: Variable assignment.
            keys: Order of the returned blocks. Defaults to `keys()`. Keys the
                expression does not depend on get zero blocks.
            dims: Expected tangent dimension per key; checked when given.

        Returns:
            (value, blocks) with ``blocks[i].shape == (output dim, dims[i])``.
        """
        keys = self.keys() if keys is None else tuple(keys)
        if dims is not None:
            if len(dims) != len(keys):
                raise ValueError(f"Got {len(dims)} dims for {len(keys)} keys")
            for key, dim in zip(keys, dims):
                if key in self._leaf_charts and self._leaf_charts[key].dim != dim:
                    raise ValueError(
                        f"Key {format_key(key)} has dimension "
                        f"{self._leaf_charts[key].dim}, expected {dim}"
                    )

        fn = self._jacobian_fns.get(keys)
        if fn is None:
            fn = self._build_jacobian_fn(keys)
            self._jacobian_fns[keys] = fn

        y0, own_blocks = fn(self._environment(values))

        out_chart = self._chart or default_chart(y0)
        blocks: List[jnp.ndarray] = []
        it = iter(own_blocks)
        for i, key in enumerate(keys):
            if key in self._leaf_charts:
                blocks.append(jnp.reshape(next(it), (out_chart.dim, -1)))
            else:
                n = dims[i] if dims is not None else values.dim(key)
                blocks.append(jnp.zeros((out_chart.dim, n)))
        return y0, blocks

    def _build_jacobian_fn(self, keys: Tuple[Key, ...]) -> Callable:
        own = [k for k in keys if k in self._leaf_charts]
        charts = [self._leaf_charts[k] for k in own]
        fixed_chart = self._chart

        def fn(env):
            y0 = self._evaluate(env)
            out_chart = fixed_chart or default_chart(y0)
            if not own:
                return y0, ()

            def local_prediction(deltas):
                perturbed = dict(env)
                for key, chart, d in zip(own, charts, deltas):
                    perturbed[key] = chart.retract(env[key], d)
                return out_chart.local(y0, self._evaluate(perturbed))

            zeros = tuple(jnp.zeros(chart.dim) for chart in charts)
            return y0, jax.jacfwd(local_prediction)(zeros)

        return jax.jit(fn)

    def __repr__(self) -> str:
        if self._kind == _LEAF:
            return f"Expression.leaf({format_key(self._key)}, {self._chart})"
        if self._kind == _CONSTANT:
            return f"Expression.constant({self._constant!r})"
        name = getattr(self._fn, "__name__", repr(self._fn))
        return f"Expression.apply({name}, {', '.join(map(repr, self._children))})"
