from __future__ import annotations

import jax.numpy as jnp
import pytest

from manifold_factors.core.math3d import so3_exp
from manifold_factors.slam.manifold import (
    TYPE_TO_CHART,
    EuclideanChart,
    Pose3Chart,
    Rot3Chart,
    ScalarChart,
    default_chart,
    get_chart,
)


@pytest.mark.parametrize(
    "chart, x, d",
    [
        (ScalarChart(), 2.5, jnp.array([0.3])),
        (EuclideanChart(3), jnp.array([1.0, 2.0, 3.0]), jnp.array([0.1, -0.2, 0.3])),
        (Rot3Chart(), so3_exp(jnp.array([0.4, -0.2, 0.1])), jnp.array([0.01, 0.02, -0.03])),
        (
            Pose3Chart(),
            jnp.array([1.0, -0.5, 2.0, 0.2, -0.1, 0.4]),
            jnp.array([0.1, -0.05, 0.02, 0.01, 0.0, -0.02]),
        ),
    ],
)
def test_chart_round_trip(chart, x, d):
    """local(x, retract(x, d)) == d for small d."""
    y = chart.retract(x, d)
    assert jnp.allclose(chart.local(x, y), d, atol=1e-9)


def test_chart_local_at_same_point_is_zero():
    x = jnp.array([0.3, 0.1, -0.2, 0.5, -0.3, 0.2])
    assert jnp.allclose(Pose3Chart().local(x, x), jnp.zeros(6), atol=1e-12)


def test_pose_chart_tangent_is_body_frame():
    """A translation-only tangent step moves along the rotated x axis."""
    x = jnp.array([0.0, 0.0, 0.0, 0.0, 0.0, jnp.pi / 2])
    y = Pose3Chart().retract(x, jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0]))
    assert jnp.allclose(y[:3], jnp.array([0.0, 1.0, 0.0]), atol=1e-9)


def test_get_chart_resolves_names_dims_and_instances():
    assert get_chart("pose_se3") == Pose3Chart()
    assert get_chart("landmark3d") == EuclideanChart(3)
    assert get_chart("place1d").dim == 1
    assert get_chart(4) == EuclideanChart(4)
    chart = Rot3Chart()
    assert get_chart(chart) is chart


def test_get_chart_errors():
    with pytest.raises(KeyError):
        get_chart("voxel_cell")
    with pytest.raises(TypeError):
        get_chart(2.5)


def test_default_chart():
    assert default_chart(1.0) == ScalarChart()
    assert default_chart(jnp.zeros(5)) == EuclideanChart(5)
    with pytest.raises(TypeError):
        default_chart(jnp.eye(3))


def test_chart_equality_depends_on_dim():
    assert EuclideanChart(2) != EuclideanChart(3)
    assert EuclideanChart(3) != Rot3Chart()
    assert len({EuclideanChart(3), EuclideanChart(3), Pose3Chart()}) == 2


def test_type_registry_dims():
    dims = {name: factory().dim for name, factory in TYPE_TO_CHART.items()}
    assert dims["pose_se3"] == 6
    assert dims["rot3"] == 3
    assert dims["point2"] == 2
    assert dims["scalar"] == 1


@pytest.mark.parametrize("angle", [jnp.pi - 1e-3, jnp.pi - 1e-6, jnp.pi])
@pytest.mark.parametrize("axis", [[0.0, 0.0, 1.0], [0.0, 0.6, 0.8]])
def test_pose_and_rotation_round_trip_near_pi(angle, axis):
    """Retracting a pose whose rotation is close to π does not corrupt it."""
    w = angle * jnp.array(axis)
    x = jnp.concatenate([jnp.array([1.0, -0.5, 2.0]), w])
    d = jnp.array([0.1, -0.05, 0.02, 0.01, 0.0, -0.02])
    assert jnp.allclose(Pose3Chart().local(x, Pose3Chart().retract(x, d)), d, atol=1e-9)

    R = so3_exp(w)
    assert jnp.allclose(Rot3Chart().local(R, Rot3Chart().retract(R, d[3:])), d[3:], atol=1e-9)
