from __future__ import annotations

import pickle

import jax.numpy as jnp
import pytest

from manifold_factors.core.expression import Expression
from manifold_factors.core.expression_factor import ExpressionFactor, ExpressionFactor2
from manifold_factors.core.factor_graph import FactorGraph
from manifold_factors.core.math3d import relative_pose_se3, so3_exp, transform_to_se3
from manifold_factors.core.noise_model import Constrained, Diagonal, Isotropic, Unit
from manifold_factors.core.types import symbol
from manifold_factors.core.values import Values
from manifold_factors.slam.manifold import EuclideanChart, Pose3Chart
from manifold_factors.slam.measurements import (
    BetweenFactor,
    PoseBearingFactor,
    PoseLandmarkFactor,
    PriorFactor,
    transform_to,
)

X1 = symbol("x", 1)
X2 = symbol("x", 2)
L1 = symbol("l", 1)


def _values() -> Values:
    values = Values()
    values.insert(X1, jnp.array([0.1, 0.2, 0.3, 0.05, -0.02, 0.1]), "pose_se3")
    values.insert(X2, jnp.array([1.0, 0.0, -0.5, 0.3, 0.1, -0.2]), "pose_se3")
    values.insert(L1, jnp.array([2.0, 1.0, 0.5]))
    return values


def test_prior_factor_error_block_and_rhs():
    """
    Prior z on a 3-vector x with unit noise:
        error = x - z, block = I, rhs = z - x
    """
    z = jnp.array([1.0, 2.0, 3.0])
    x = jnp.array([2.0, 0.0, 5.0])
    values = Values()
    values.insert(L1, x)

    factor = PriorFactor(L1, z, Unit(3))
    assert factor.keys == (L1,)
    assert factor.dim == 3
    assert jnp.allclose(factor.unwhitened_error(values), x - z)
    assert factor.error(values) == pytest.approx(0.5 * float(jnp.sum((x - z) ** 2)))

    system = factor.linearize(values)
    assert system.keys == (L1,)
    assert jnp.allclose(system.block(L1), jnp.eye(3))
    assert jnp.allclose(system.b, z - x)
    assert system.noise_model is None


def test_prior_factor_whitening():
    values = Values()
    values.insert(L1, jnp.array([1.5, 2.0]))
    factor = PriorFactor(L1, jnp.array([1.0, 2.0]), Isotropic(2, 0.5))
    system = factor.linearize(values)
    assert jnp.allclose(system.block(L1), 2.0 * jnp.eye(2))
    assert jnp.allclose(system.b, jnp.array([-1.0, 0.0]))
    assert factor.error(values) == pytest.approx(0.5)


def test_noise_dimension_mismatch_fails_at_construction():
    with pytest.raises(ValueError, match="incorrect dimension"):
        PriorFactor(L1, jnp.array([1.0, 2.0, 3.0]), Isotropic(2, 0.1))
    with pytest.raises(ValueError, match="incorrect dimension"):
        BetweenFactor(X1, X2, Unit(3), jnp.zeros(6))


def test_missing_noise_model_fails_at_construction():
    with pytest.raises(ValueError, match="no NoiseModel"):
        PriorFactor(L1, jnp.zeros(3), None)
    with pytest.raises(ValueError, match="no NoiseModel"):
        PoseLandmarkFactor(X1, L1, None, jnp.zeros(3))


def test_pose_prior_uses_pose_chart():
    values = _values()
    prior = values[X1]
    factor = PriorFactor(X1, prior, Unit(6), chart="pose_se3")
    assert jnp.allclose(factor.unwhitened_error(values), jnp.zeros(6), atol=1e-12)
    system = factor.linearize(values)
    assert jnp.allclose(system.block(X1), jnp.eye(6), atol=1e-9)


def test_base_expression_factor_uses_sorted_expression_keys():
    values = _values()
    expr = transform_to(Expression.leaf(X1, Pose3Chart()), Expression.leaf(L1, EuclideanChart(3)))
    measured = jnp.array([1.0, 1.0, 0.0])
    factor = ExpressionFactor(Isotropic(3, 0.1), measured, expr)

    assert factor.keys == (L1, X1)
    assert factor.dims == (3, 6)
    e = factor.unwhitened_error(values)
    assert jnp.allclose(e, transform_to_se3(values[X1], values[L1]) - measured)


def test_declared_keys_must_match_expression():
    expr = Expression.leaf(L1, EuclideanChart(3))
    with pytest.raises(ValueError):
        ExpressionFactor(Unit(3), jnp.zeros(3), expr, keys=(X1,))


def test_binary_factor_keeps_declared_key_order():
    factor = PoseLandmarkFactor(X1, L1, Unit(3), jnp.zeros(3))
    assert factor.keys == (X1, L1)
    assert factor.dims == (6, 3)
    system = factor.linearize(_values())
    assert system.keys == (X1, L1)
    assert system.dims() == (6, 3)


def test_evaluate_error_with_and_without_jacobians():
    pose = jnp.array([1.0, 2.0, 0.0, 0.0, 0.0, 0.4])
    landmark = jnp.array([3.0, 1.0, 0.5])
    measured = jnp.array([0.5, -0.5, 0.5])
    factor = PoseLandmarkFactor(X1, L1, Unit(3), measured)

    e = factor.evaluate_error(pose, landmark)
    assert jnp.allclose(e, transform_to_se3(pose, landmark) - measured)

    e2, (H1, H2) = factor.evaluate_error(pose, landmark, compute_jacobians=True)
    assert jnp.allclose(e2, e)
    assert H1.shape == (3, 6)
    assert jnp.allclose(H2, so3_exp(pose[3:]).T, atol=1e-12)


def test_between_factor_zero_error_at_measurement():
    values = _values()
    measured = relative_pose_se3(values[X1], values[X2])
    factor = BetweenFactor(X1, X2, Diagonal.from_sigmas([0.1] * 3 + [0.05] * 3), measured)
    assert jnp.allclose(factor.unwhitened_error(values), jnp.zeros(6), atol=1e-9)
    assert factor.error(values) == pytest.approx(0.0, abs=1e-12)
    system = factor.linearize(values)
    assert jnp.allclose(system.b, jnp.zeros(6), atol=1e-9)


def test_bearing_measurement_is_normalized():
    factor = PoseBearingFactor(X1, L1, Isotropic(3, 0.01), jnp.array([2.0, 0.0, 0.0]))
    assert jnp.allclose(factor.measured, jnp.array([1.0, 0.0, 0.0]))


def test_constrained_noise_model_is_carried_by_linear_system():
    values = Values()
    values.insert(L1, jnp.array([1.0, 1.0, 1.0]))
    factor = PriorFactor(L1, jnp.zeros(3), Diagonal.from_sigmas([0.0, 0.5, 1.0]))
    system = factor.linearize(values)

    assert isinstance(system.noise_model, Constrained)
    assert jnp.allclose(system.noise_model.sigmas, jnp.array([0.0, 1.0, 1.0]))
    assert jnp.allclose(system.block(L1), jnp.diag(jnp.array([1.0, 2.0, 1.0])))
    assert jnp.allclose(system.b, jnp.array([-1.0, -2.0, -1.0]))


class _InactivePrior(PriorFactor):
    def active(self, values):
        return False


def test_inactive_factor_is_skipped():
    values = Values()
    values.insert(L1, jnp.ones(3))
    factor = _InactivePrior(L1, jnp.zeros(3), Unit(3))
    assert factor.linearize(values) is None
    assert factor.error(values) == 0.0

    graph = FactorGraph([factor, PriorFactor(L1, jnp.zeros(3), Unit(3))])
    systems = graph.linearize(values)
    assert len(systems) == 1
    assert graph.error(values) == pytest.approx(1.5)


def test_factor_graph_collects_keys_and_error():
    values = _values()
    graph = FactorGraph()
    graph.add(PriorFactor(X1, values[X1], Unit(6), chart="pose_se3"))
    graph.add(BetweenFactor(X1, X2, Unit(6), relative_pose_se3(values[X1], values[X2])))
    graph.add(PoseLandmarkFactor(X2, L1, Unit(3), transform_to_se3(values[X2], values[L1]) + 1.0))

    assert len(graph) == 3
    assert graph.keys() == (L1, X1, X2)
    assert graph.error(values) == pytest.approx(1.5, abs=1e-9)
    assert [s.keys for s in graph.linearize(values)] == [(X1,), (X1, X2), (X2, L1)]


@pytest.mark.parametrize(
    "factor",
    [
        PriorFactor(L1, jnp.array([1.0, 2.0, 3.0]), Isotropic(3, 0.2)),
        PriorFactor(X1, jnp.array([0.1, 0.0, 0.0, 0.0, 0.0, 0.2]), Unit(6), chart=Pose3Chart()),
        BetweenFactor(X1, X2, Diagonal.from_sigmas([0.1] * 6), jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.1])),
        PoseLandmarkFactor(X1, L1, Unit(3), jnp.array([1.0, 1.0, 0.0])),
        PoseBearingFactor(X1, L1, Isotropic(3, 0.05), jnp.array([1.0, 1.0, 0.0])),
    ],
)
def test_pickle_round_trip_rebuilds_expression(factor):
    values = _values()
    restored = pickle.loads(pickle.dumps(factor))

    assert type(restored) is type(factor)
    assert restored.equals(factor)
    assert jnp.allclose(restored.unwhitened_error(values), factor.unwhitened_error(values))
    a, b = restored.linearize(values), factor.linearize(values)
    for A_restored, A in zip(a.blocks, b.blocks):
        assert jnp.allclose(A_restored, A)


def test_base_expression_factor_cannot_be_unpickled():
    expr = Expression.leaf(L1, EuclideanChart(3))
    factor = ExpressionFactor(Unit(3), jnp.zeros(3), expr)
    data = pickle.dumps(factor)
    with pytest.raises(NotImplementedError, match="cannot deserialize"):
        pickle.loads(data)


def test_binary_base_requires_build_expression():
    with pytest.raises(NotImplementedError):
        ExpressionFactor2(X1, X2, Unit(6), jnp.zeros(6))


def test_base_factor_without_expression_fails_at_construction():
    """The expression comes from the `expression()` hook when not given."""
    with pytest.raises(ValueError, match="no NoiseModel"):
        ExpressionFactor(None, jnp.zeros(3))
    with pytest.raises(ValueError, match="no NoiseModel"):
        ExpressionFactor(None, jnp.zeros(3), Expression.leaf(L1, EuclideanChart(3)))
    with pytest.raises(NotImplementedError, match="cannot deserialize"):
        ExpressionFactor(Unit(3), jnp.zeros(3))


class _OffsetLandmark(ExpressionFactor):
    """Subclass supplying its expression through the hook only."""

    def __init__(self, key, noise_model, measured):
        self._landmark_key = key
        super().__init__(noise_model, measured)

    def expression(self):
        return Expression.apply(
            lambda p: p + 1.0, Expression.leaf(self._landmark_key, EuclideanChart(3)), chart=EuclideanChart(3)
        )


def test_subclass_expression_hook_is_used_by_constructor():
    values = _values()
    factor = _OffsetLandmark(L1, Unit(3), jnp.zeros(3))
    assert factor.keys == (L1,)
    assert factor.dim == 3
    assert jnp.allclose(factor.unwhitened_error(values), values[L1] + 1.0)
    system = factor.linearize(values)
    assert jnp.allclose(system.block(L1), jnp.eye(3))
