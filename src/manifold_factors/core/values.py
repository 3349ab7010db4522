# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Variable assignment containers.

Values
    Mapping from Key to a manifold value together with the chart that defines
    its tangent space. Iteration is in sorted key order. A `Values` is never
    perturbed in place: `retract` returns a new container.

VectorValues
    Mapping from Key to a tangent vector (a "delta" map). Used as the argument
    of `Values.retract` and returned by `Values.zero_vectors` and
    `Values.local_coordinates`. Keys absent from a delta map are treated as
    zero perturbations.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

import jax.numpy as jnp

from .types import Key, format_key
from ..slam.manifold import Chart, ChartSpec, default_chart, get_chart


class VectorValues(dict):
    """Key -> tangent vector map."""

    @classmethod
    def zero(cls, dims: Mapping[Key, int]) -> "VectorValues":
        return cls({key: jnp.zeros(dim) for key, dim in dims.items()})

    def dim(self, key: Key) -> int:
        return int(jnp.shape(self[key])[0])

    def total_dim(self) -> int:
        return sum(self.dim(k) for k in self)

    def vector(self) -> jnp.ndarray:
        """Concatenate all entries in sorted key order."""
        if not self:
            return jnp.zeros((0,))
        return jnp.concatenate([jnp.ravel(self[k]) for k in sorted(self)])

    def with_entry(self, key: Key, v: jnp.ndarray) -> "VectorValues":
        out = VectorValues(self)
        out[key] = jnp.ravel(jnp.asarray(v))
        return out


class Values:
    """Key -> (manifold value, chart) assignment."""

    def __init__(self) -> None:
        self._values: Dict[Key, Any] = {}
        self._charts: Dict[Key, Chart] = {}

    # --- Mapping-like access ---

    def insert(self, key: Key, value: Any, chart: Optional[ChartSpec] = None) -> None:
        """
        Add a new variable. The chart defaults to `default_chart(value)`;
        a registered type name such as "pose_se3" is accepted too.
        """
        if key in self._values:
            raise KeyError(f"Values already contains key {format_key(key)}")
        self._set(key, value, chart)

    def update(self, key: Key, value: Any) -> None:
        """Replace the value stored at an existing key, keeping its chart."""
        if key not in self._values:
            raise KeyError(f"Values has no key {format_key(key)}")
        self._values[key] = value

    def _set(self, key: Key, value: Any, chart: Optional[ChartSpec]) -> None:
        c = default_chart(value) if chart is None else get_chart(chart)
        self._values[key] = value
        self._charts[key] = c

    def at(self, key: Key) -> Any:
        try:
            return self._values[key]
        except KeyError:
            raise KeyError(f"Values has no key {format_key(key)}") from None

    def __getitem__(self, key: Key) -> Any:
        return self.at(key)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Key]:
        return iter(self.keys())

    def keys(self) -> Tuple[Key, ...]:
        return tuple(sorted(self._values))

    def items(self) -> Iterator[Tuple[Key, Any]]:
        for key in self.keys():
            yield key, self._values[key]

    def chart(self, key: Key) -> Chart:
        try:
            return self._charts[key]
        except KeyError:
            raise KeyError(f"Values has no key {format_key(key)}") from None

    def dim(self, key: Key) -> int:
        return self.chart(key).dim

    def dims(self) -> Dict[Key, int]:
        return {key: self._charts[key].dim for key in self.keys()}

    def copy(self) -> "Values":
        out = Values()
        out._values = dict(self._values)
        out._charts = dict(self._charts)
        return out

    # --- Manifold operations ---

    def zero_vectors(self) -> VectorValues:
        """One zero tangent vector per key."""
        return VectorValues.zero(self.dims())

    def retract(self, delta: Mapping[Key, jnp.ndarray]) -> "Values":
        """
        Bulk retraction: apply each chart's retract to the keys present in
        `delta`. Keys missing from `delta` are copied unchanged.
        """
        out = self.copy()
        for key, d in delta.items():
            chart = self.chart(key)
            d = jnp.ravel(jnp.asarray(d))
            if d.shape[0] != chart.dim:
                raise ValueError(
                    f"Delta for key {format_key(key)} has dimension {d.shape[0]}, "
                    f"expected {chart.dim}"
                )
            out._values[key] = chart.retract(self._values[key], d)
        return out

    def local_coordinates(self, other: "Values") -> VectorValues:
        """Tangent vectors taking this assignment to `other`, key by key."""
        if set(self._values) != set(other._values):
            raise ValueError("local_coordinates requires Values with the same keys")
        return VectorValues(
            {key: self._charts[key].local(self._values[key], other.at(key)) for key in self.keys()}
        )

    def __repr__(self) -> str:
        body = ", ".join(f"{format_key(k)}: {v!r}" for k, v in self.items())
        return f"Values({{{body}}})"
