from __future__ import annotations

import jax.numpy as jnp
import pytest

from manifold_factors.core.noise_model import (
    Constrained,
    Diagonal,
    Gaussian,
    Isotropic,
    Unit,
)


def test_diagonal_whitening_divides_by_sigma():
    model = Diagonal.from_sigmas([0.5, 2.0])
    assert jnp.allclose(model.whiten(jnp.array([1.0, 1.0])), jnp.array([2.0, 0.5]))
    assert jnp.allclose(model.unwhiten(model.whiten(jnp.array([3.0, -1.0]))), jnp.array([3.0, -1.0]))
    assert model.distance(jnp.array([1.0, 2.0])) == pytest.approx(4.0 + 1.0)


def test_diagonal_variances_and_precisions():
    assert jnp.allclose(Diagonal.from_variances([4.0, 0.25]).sigmas, jnp.array([2.0, 0.5]))
    assert jnp.allclose(Diagonal.from_precisions([4.0, 0.25]).sigmas, jnp.array([0.5, 2.0]))


def test_gaussian_from_covariance_matches_diagonal():
    cov = jnp.diag(jnp.array([0.25, 4.0, 1.0]))
    gaussian = Gaussian.from_covariance(cov)
    diagonal = Diagonal.from_sigmas([0.5, 2.0, 1.0])
    v = jnp.array([1.0, -2.0, 0.5])
    assert jnp.allclose(gaussian.whiten(v), diagonal.whiten(v))
    assert jnp.allclose(gaussian.covariance(), cov)


def test_gaussian_full_information():
    information = jnp.array([[2.0, 0.5], [0.5, 1.0]])
    model = Gaussian.from_information(information)
    v = jnp.array([0.3, -0.7])
    assert model.distance(v) == pytest.approx(float(v @ information @ v))
    H = jnp.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
    assert jnp.allclose(model.whiten_matrix(H), model.R @ H)


def test_gaussian_rejects_non_positive_definite():
    with pytest.raises(ValueError):
        Gaussian.from_information(jnp.array([[1.0, 2.0], [2.0, 1.0]]))
    with pytest.raises(ValueError):
        Gaussian(jnp.ones((2, 3)))


def test_isotropic_and_unit():
    iso = Isotropic(3, 0.1)
    assert iso.dim == 3
    assert jnp.allclose(iso.whiten(jnp.ones(3)), 10.0 * jnp.ones(3))
    unit = Unit(2)
    assert jnp.allclose(unit.whiten(jnp.array([1.0, 2.0])), jnp.array([1.0, 2.0]))
    assert not unit.is_constrained
    with pytest.raises(ValueError):
        Isotropic(3, 0.0)


def test_dimension_mismatch_is_rejected():
    with pytest.raises(ValueError):
        Isotropic(3, 1.0).whiten(jnp.ones(2))
    with pytest.raises(ValueError):
        Unit(2).whiten_system([jnp.eye(3)], jnp.ones(3))


def test_whiten_system_applies_same_transform():
    model = Diagonal.from_sigmas([0.5, 0.25])
    blocks, b = model.whiten_system([jnp.eye(2), jnp.ones((2, 1))], jnp.array([1.0, 1.0]))
    assert jnp.allclose(blocks[0], jnp.diag(jnp.array([2.0, 4.0])))
    assert jnp.allclose(blocks[1], jnp.array([[2.0], [4.0]]))
    assert jnp.allclose(b, jnp.array([2.0, 4.0]))


def test_zero_sigma_gives_constrained_model():
    model = Diagonal.from_sigmas([0.0, 0.5, 1.0])
    assert isinstance(model, Constrained)
    assert model.is_constrained
    assert jnp.array_equal(model.constrained_rows(), jnp.array([True, False, False]))
    # constrained rows are not scaled and do not enter the cost
    assert jnp.allclose(model.whiten(jnp.array([3.0, 1.0, 1.0])), jnp.array([3.0, 2.0, 1.0]))
    assert model.distance(jnp.array([3.0, 1.0, 1.0])) == pytest.approx(5.0)


def test_constrained_unit_keeps_constrained_rows():
    model = Constrained(jnp.array([0.0, 0.5, 0.0]))
    unit = model.unit()
    assert isinstance(unit, Constrained)
    assert jnp.allclose(unit.sigmas, jnp.array([0.0, 1.0, 0.0]))
    assert Constrained.all(4).dim == 4


def test_negative_sigmas_are_rejected():
    with pytest.raises(ValueError):
        Diagonal.from_sigmas([1.0, -1.0])
    with pytest.raises(ValueError):
        Diagonal(jnp.array([1.0, 0.0]))


def test_equals():
    assert Diagonal.from_sigmas([1.0, 2.0]).equals(Diagonal.from_sigmas([1.0, 2.0]))
    assert not Diagonal.from_sigmas([1.0, 2.0]).equals(Diagonal.from_sigmas([1.0, 3.0]))
    assert Isotropic(2, 0.5).equals(Isotropic(2, 0.5))
