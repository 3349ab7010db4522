# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""
Core typed data structures for manifold-factors.

This module defines the lightweight containers shared by the factor,
expression and finite-difference layers. They store structure and dense
blocks only; all derivative computation happens in JAX functions elsewhere.

Types
-----
Key
    Unique, totally ordered identifier of one variable slot in a `Values`
    container. Plain integers are valid keys; `symbol` packs a character and
    an index into one integer (e.g. ``symbol("x", 1)``) so logs stay readable.

LinearSystem
    The result of linearizing a nonlinear factor at a point:

        - keys:   ordered variable keys the factor depends on
        - blocks: one dense Jacobian block per key, shape (rows, dim(key))
        - b:      right-hand side of length rows
        - noise_model: optional model carried along for constrained rows

    A `LinearSystem` represents the least-squares term ``||Σ_k A_k δ_k - b||²``
    and is never mutated after construction.

Notes
-----
The right-hand side convention is ``b = -error``: a linearization at the
optimum of the factor has ``b == 0``.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Mapping, NewType, Optional, Tuple

import jax.numpy as jnp

Key = NewType("Key", int)

_CHR_BITS = 8
_INDEX_BITS = 64 - _CHR_BITS
_INDEX_MASK = (1 << _INDEX_BITS) - 1


def symbol(c: str, j: int) -> Key:
    """Pack a single character and a non-negative index into a Key."""
    if len(c) != 1:
        raise ValueError(f"symbol expects a single character, got {c!r}")
    if j < 0 or j > _INDEX_MASK:
        raise ValueError(f"symbol index out of range: {j}")
    return Key((ord(c) << _INDEX_BITS) | j)


def symbol_chr(key: Key) -> str:
    return chr((int(key) >> _INDEX_BITS) & 0xFF)


def symbol_index(key: Key) -> int:
    return int(key) & _INDEX_MASK


def format_key(key: Key) -> str:
    """Default key formatter: ``x1`` for symbols, the integer otherwise."""
    c = symbol_chr(key)
    if c.isprintable() and c.isalpha():
        return f"{c}{symbol_index(key)}"
    return str(int(key))


@dataclass(frozen=True)
class LinearSystem:
    """Jacobian blocks plus right-hand side of one linearized factor."""
    keys: Tuple[Key, ...]
    blocks: Tuple[jnp.ndarray, ...]
    b: jnp.ndarray
    noise_model: Optional[Any] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "keys", tuple(self.keys))
        object.__setattr__(self, "blocks", tuple(jnp.asarray(A) for A in self.blocks))
        object.__setattr__(self, "b", jnp.ravel(jnp.asarray(self.b)))

        if len(self.keys) != len(self.blocks):
            raise ValueError(
                f"LinearSystem: {len(self.keys)} keys but {len(self.blocks)} blocks"
            )
        if len(set(self.keys)) != len(self.keys):
            raise ValueError("LinearSystem: duplicate keys")
        rows = self.b.shape[0]
        for key, A in zip(self.keys, self.blocks):
            if A.ndim != 2 or A.shape[0] != rows:
                raise ValueError(
                    f"LinearSystem: block for key {format_key(key)} has shape "
                    f"{A.shape}, expected ({rows}, n)"
                )

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    def dims(self) -> Tuple[int, ...]:
        return tuple(int(A.shape[1]) for A in self.blocks)

    def block(self, key: Key) -> jnp.ndarray:
        try:
            return self.blocks[self.keys.index(key)]
        except ValueError:
            raise KeyError(f"LinearSystem has no block for key {format_key(key)}") from None

    def jacobian(self) -> Tuple[jnp.ndarray, jnp.ndarray]:
        """Return the horizontally stacked matrix A and the vector b."""
        if not self.blocks:
            return jnp.zeros((self.rows, 0)), self.b
        return jnp.concatenate(self.blocks, axis=1), self.b

    def augmented_matrix(self) -> jnp.ndarray:
        A, b = self.jacobian()
        return jnp.concatenate([A, b[:, None]], axis=1)

    def whiten(self, noise_model) -> "LinearSystem":
        """
        Return a copy whitened by `noise_model`.

        A constrained model leaves its hard rows unscaled, so the copy carries
        ``noise_model.unit()`` to mark them; otherwise no model is attached.
        """
        blocks, b = noise_model.whiten_system(self.blocks, self.b)
        carried = noise_model.unit() if noise_model.is_constrained else None
        return LinearSystem(self.keys, blocks, b, carried)

    def error_vector(self, delta: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        """
        Residual ``Σ_k A_k δ_k - b`` of the linear system.

        Keys absent from `delta` contribute zero.
        """
        r = -self.b
        for key, A in zip(self.keys, self.blocks):
            d = delta.get(key)
            if d is not None:
                r = r + A @ jnp.ravel(jnp.asarray(d))
        return r

    def error(self, delta: Mapping[Key, jnp.ndarray]) -> float:
        """Half squared norm of `error_vector`."""
        r = self.error_vector(delta)
        return 0.5 * float(jnp.dot(r, r))
