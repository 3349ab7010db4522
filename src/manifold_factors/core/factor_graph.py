# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Nonlinear factors and the factor graph container.

A factor is a measurement constraint over an ordered, fixed set of variable
keys. Linearizing a factor at a `Values` assignment produces a
`core.types.LinearSystem`: one Jacobian block per key plus a right-hand side,
whitened by the factor's noise model.

The module stores:
    - `NonlinearFactor`: the capability interface every factor implements
    - `NoiseModelFactor`: a factor with a Gaussian noise model and an
      unwhitened error function r(x); provides error / linearize on top
    - `FactorGraph`: an ordered collection of factors

Primary Methods
---------------
NoiseModelFactor.unwhitened_error(values)
    Error vector without the noise model, r(x) ∈ ℝᵐ.

NoiseModelFactor.unwhitened_error_and_jacobians(values)
    Error vector plus one Jacobian block per key. Subclasses provide it when
    they have analytic derivatives.

NoiseModelFactor.linearize(values)
    Whitened `LinearSystem` with b = -r(x), or None when the factor is
    inactive at `values`.

FactorGraph.linearize(values)
    Linearizes every active factor.

Notes
-----
Only `unwhitened_error` and `keys` are needed to linearize a factor
numerically (see `numerical.linearization`), which is what makes finite
differences an independent check of any analytic implementation.
"""

from __future__ import annotations
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import jax.numpy as jnp

from ..logger import manifold_factors_logger
from .noise_model import NoiseModel
from .types import Key, LinearSystem, format_key
from .values import Values


class NonlinearFactor:
    """Abstract factor connecting variables."""

    def __init__(self, keys: Sequence[Key] = ()) -> None:
        self._keys: Tuple[Key, ...] = tuple(keys)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self._keys

    @property
    def size(self) -> int:
        return len(self._keys)

    @property
    def dim(self) -> int:
        """Dimension of the error vector."""
        raise NotImplementedError

    def active(self, values: Values) -> bool:
        """Whether the factor contributes at `values`. Always true by default."""
        return True

    def error(self, values: Values) -> float:
        raise NotImplementedError

    def linearize(self, values: Values) -> Optional[LinearSystem]:
        raise NotImplementedError

    def __repr__(self) -> str:
        keys = ", ".join(format_key(k) for k in self._keys)
        return f"{type(self).__name__}(keys=[{keys}])"


class NoiseModelFactor(NonlinearFactor):
    """
    Factor with an unwhitened error function and a noise model.

    error(x) = 0.5 * ||whiten(r(x))||²
    """

    def __init__(self, noise_model: Optional[NoiseModel], keys: Sequence[Key] = ()) -> None:
        super().__init__(keys)
        self._noise_model = noise_model

    @property
    def noise_model(self) -> Optional[NoiseModel]:
        return self._noise_model

    @property
    def dim(self) -> int:
        return self._noise_model.dim

    def unwhitened_error(self, values: Values) -> jnp.ndarray:
        raise NotImplementedError

    def unwhitened_error_and_jacobians(
        self, values: Values
    ) -> Tuple[jnp.ndarray, List[jnp.ndarray]]:
        raise NotImplementedError(
            f"{type(self).__name__} does not provide analytic Jacobians"
        )

    def whitened_error(self, values: Values) -> jnp.ndarray:
        return self._noise_model.whiten(self.unwhitened_error(values))

    def error(self, values: Values) -> float:
        if not self.active(values):
            return 0.0
        return 0.5 * self._noise_model.distance(self.unwhitened_error(values))

    def linearize(self, values: Values) -> Optional[LinearSystem]:
        """
        Linearize using `unwhitened_error_and_jacobians`:

            A_k = whiten(H_k),  b = whiten(-r(x))
        """
        if not self.active(values):
            manifold_factors_logger.debug("%r is inactive, not linearized", self)
            return None

        e, H = self.unwhitened_error_and_jacobians(values)
        return LinearSystem(self._keys, H, -jnp.ravel(e)).whiten(self._noise_model)


class FactorGraph:
    """Ordered collection of nonlinear factors."""

    def __init__(self, factors: Iterable[NonlinearFactor] = ()) -> None:
        self._factors: List[NonlinearFactor] = list(factors)

    def add(self, factor: NonlinearFactor) -> None:
        self._factors.append(factor)

    def __len__(self) -> int:
        return len(self._factors)

    def __iter__(self) -> Iterator[NonlinearFactor]:
        return iter(self._factors)

    def __getitem__(self, i: int) -> NonlinearFactor:
        return self._factors[i]

    def keys(self) -> Tuple[Key, ...]:
        """All keys referenced by the graph, sorted."""
        return tuple(sorted({k for f in self._factors for k in f.keys}))

    def error(self, values: Values) -> float:
        """Total error: sum of factor errors."""
        return sum(f.error(values) for f in self._factors)

    def linearize(self, values: Values) -> List[LinearSystem]:
        """Linear system of every active factor, in insertion order."""
        systems = []
        for factor in self._factors:
            system = factor.linearize(values)
            if system is not None:
                systems.append(system)
        return systems
