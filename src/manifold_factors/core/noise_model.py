# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Gaussian noise models used to whiten factor residuals and Jacobians.

Whitening maps a residual r to ``R r`` where ``RᵀR`` is the information
matrix, so that ``||R r||²`` is the statistically normalized cost of a
factor. The same transform is applied to every Jacobian block of a
linearized factor (`whiten_system`).

Models
------
Gaussian
    Full square-root information matrix R (upper triangular from a Cholesky
    factor of the information matrix).

Diagonal
    Independent components with per-component standard deviations sigma:
        r'[i] = r[i] / sigma[i]

Isotropic
    Diagonal model with a single sigma shared by all components.

Unit
    Identity weighting, sigma = 1.

Constrained
    Diagonal model where some sigmas are zero. Zero-sigma rows are hard
    constraints: whitening leaves them unscaled and `unit()` returns the
    unit-weight model a solver uses to recognise them.

Notes
-----
`Diagonal.from_sigmas` returns a `Constrained` model as soon as one sigma is
zero.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import jax.numpy as jnp


class NoiseModel:
    """Base class: a dimension plus a linear whitening transform."""

    def __init__(self, dim: int) -> None:
        self._dim = int(dim)

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def is_constrained(self) -> bool:
        return False

    def whiten(self, v: jnp.ndarray) -> jnp.ndarray:
        raise NotImplementedError

    def unwhiten(self, v: jnp.ndarray) -> jnp.ndarray:
        raise NotImplementedError

    def whiten_matrix(self, H: jnp.ndarray) -> jnp.ndarray:
        """Whiten every column of H."""
        H = jnp.asarray(H)
        if H.shape[1] == 0:
            return H
        return jnp.stack([self.whiten(H[:, j]) for j in range(H.shape[1])], axis=1)

    def whiten_system(
        self, blocks: Sequence[jnp.ndarray], b: jnp.ndarray
    ) -> Tuple[Tuple[jnp.ndarray, ...], jnp.ndarray]:
        """Whiten Jacobian blocks and right-hand side with the same transform."""
        b = jnp.ravel(jnp.asarray(b))
        self._check_dim(b)
        return tuple(self.whiten_matrix(A) for A in blocks), self.whiten(b)

    def distance(self, v: jnp.ndarray) -> float:
        """Squared Mahalanobis norm ||whiten(v)||²."""
        w = self.whiten(v)
        return float(jnp.dot(w, w))

    def _check_dim(self, v: jnp.ndarray) -> None:
        if v.shape[0] != self._dim:
            raise ValueError(
                f"{type(self).__name__} of dimension {self._dim} applied to a "
                f"vector of dimension {v.shape[0]}"
            )

    def equals(self, other: "NoiseModel", tol: float = 1e-9) -> bool:
        raise NotImplementedError


class Gaussian(NoiseModel):
    """Full-covariance model given by its square-root information matrix."""

    def __init__(self, sqrt_information: jnp.ndarray) -> None:
        R = jnp.asarray(sqrt_information, dtype=float)
        if R.ndim != 2 or R.shape[0] != R.shape[1]:
            raise ValueError(f"Gaussian expects a square matrix, got shape {R.shape}")
        super().__init__(R.shape[0])
        self._R = R

    @classmethod
    def from_sqrt_information(cls, R: jnp.ndarray) -> "Gaussian":
        return cls(R)

    @classmethod
    def from_information(cls, information: jnp.ndarray) -> "Gaussian":
        # information = L Lᵀ  ->  R = Lᵀ
        L = jnp.linalg.cholesky(jnp.asarray(information, dtype=float))
        if not bool(jnp.all(jnp.isfinite(L))):
            raise ValueError("Gaussian.from_information: matrix is not positive definite")
        return cls(L.T)

    @classmethod
    def from_covariance(cls, covariance: jnp.ndarray) -> "Gaussian":
        return cls.from_information(jnp.linalg.inv(jnp.asarray(covariance, dtype=float)))

    @property
    def R(self) -> jnp.ndarray:
        return self._R

    def information(self) -> jnp.ndarray:
        return self._R.T @ self._R

    def covariance(self) -> jnp.ndarray:
        return jnp.linalg.inv(self.information())

    def whiten(self, v):
        v = jnp.ravel(jnp.asarray(v))
        self._check_dim(v)
        return self._R @ v

    def unwhiten(self, v):
        v = jnp.ravel(jnp.asarray(v))
        self._check_dim(v)
        return jnp.linalg.solve(self._R, v)

    def whiten_matrix(self, H):
        return self._R @ jnp.asarray(H)

    def equals(self, other, tol=1e-9):
        return (
            isinstance(other, Gaussian)
            and other.dim == self.dim
            and bool(jnp.allclose(self.information(), other.information(), atol=tol))
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(dim={self.dim})"


class Diagonal(Gaussian):
    """Independent components with standard deviations `sigmas`."""

    def __init__(self, sigmas: jnp.ndarray) -> None:
        s = jnp.ravel(jnp.asarray(sigmas, dtype=float))
        if not bool(jnp.all(s > 0.0)):
            raise ValueError("Diagonal noise model requires strictly positive sigmas")
        NoiseModel.__init__(self, s.shape[0])
        self._sigmas = s

    @classmethod
    def from_sigmas(cls, sigmas: Sequence[float]) -> "Diagonal":
        s = jnp.ravel(jnp.asarray(sigmas, dtype=float))
        if bool(jnp.any(s < 0.0)):
            raise ValueError("sigmas must be non-negative")
        if bool(jnp.any(s == 0.0)):
            return Constrained(s)
        return Diagonal(s)

    @classmethod
    def from_variances(cls, variances: Sequence[float]) -> "Diagonal":
        return cls.from_sigmas(jnp.sqrt(jnp.asarray(variances, dtype=float)))

    @classmethod
    def from_precisions(cls, precisions: Sequence[float]) -> "Diagonal":
        return cls.from_sigmas(1.0 / jnp.sqrt(jnp.asarray(precisions, dtype=float)))

    @property
    def sigmas(self) -> jnp.ndarray:
        return self._sigmas

    @property
    def R(self) -> jnp.ndarray:
        return jnp.diag(1.0 / self._sigmas)

    def whiten(self, v):
        v = jnp.ravel(jnp.asarray(v))
        self._check_dim(v)
        return v / self._sigmas

    def unwhiten(self, v):
        v = jnp.ravel(jnp.asarray(v))
        self._check_dim(v)
        return v * self._sigmas

    def whiten_matrix(self, H):
        return jnp.asarray(H) / self._sigmas[:, None]

    def equals(self, other, tol=1e-9):
        return (
            isinstance(other, Diagonal)
            and type(other) is type(self)
            and other.dim == self.dim
            and bool(jnp.allclose(self._sigmas, other.sigmas, atol=tol))
        )


class Isotropic(Diagonal):
    """All components share the same standard deviation."""

    def __init__(self, dim: int, sigma: float) -> None:
        if sigma <= 0.0:
            raise ValueError(f"Isotropic sigma must be positive, got {sigma}")
        super().__init__(jnp.full((int(dim),), float(sigma)))
        self._sigma = float(sigma)

    @property
    def sigma(self) -> float:
        return self._sigma


class Unit(Isotropic):
    """Identity weighting."""

    def __init__(self, dim: int) -> None:
        super().__init__(dim, 1.0)

    def whiten(self, v):
        v = jnp.ravel(jnp.asarray(v))
        self._check_dim(v)
        return v

    def unwhiten(self, v):
        return self.whiten(v)

    def whiten_matrix(self, H):
        return jnp.asarray(H)


class Constrained(Diagonal):
    """
    Diagonal model with hard constraints on the zero-sigma components.

    Constrained rows are left as they are when whitening; the remaining
    rows are divided by their sigma.
    """

    def __init__(self, sigmas: jnp.ndarray) -> None:
        s = jnp.ravel(jnp.asarray(sigmas, dtype=float))
        if bool(jnp.any(s < 0.0)):
            raise ValueError("Constrained noise model requires non-negative sigmas")
        NoiseModel.__init__(self, s.shape[0])
        self._sigmas = s
        self._mask = s == 0.0
        self._safe = jnp.where(self._mask, 1.0, s)

    @classmethod
    def all(cls, dim: int) -> "Constrained":
        """Every component is a hard constraint."""
        return cls(jnp.zeros(int(dim)))

    @property
    def is_constrained(self) -> bool:
        return True

    def constrained_rows(self) -> jnp.ndarray:
        return self._mask

    @property
    def R(self) -> jnp.ndarray:
        return jnp.diag(1.0 / self._safe)

    def whiten(self, v):
        v = jnp.ravel(jnp.asarray(v))
        self._check_dim(v)
        return v / self._safe

    def unwhiten(self, v):
        v = jnp.ravel(jnp.asarray(v))
        self._check_dim(v)
        return v * self._safe

    def whiten_matrix(self, H):
        return jnp.asarray(H) / self._safe[:, None]

    def distance(self, v):
        # hard constraints do not contribute to the weighted cost
        w = jnp.where(self._mask, 0.0, self.whiten(v))
        return float(jnp.dot(w, w))

    def unit(self) -> "Constrained":
        """Unit-weight model with the same constrained rows."""
        return Constrained(jnp.where(self._mask, 0.0, 1.0))

    def __repr__(self) -> str:
        return f"Constrained(dim={self.dim}, constrained={int(jnp.sum(self._mask))})"
