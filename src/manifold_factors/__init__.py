# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""Provides the manifold-factors public API.

Importing the package enables 64-bit floats in JAX; finite-difference
steps around 1e-5 are meaningless in float32.
"""

from importlib.metadata import PackageNotFoundError, version

import jax

jax.config.update("jax_enable_x64", True)

from .core.expression import Expression
from .core.expression_factor import ExpressionFactor, ExpressionFactor2
from .core.factor_graph import FactorGraph, NoiseModelFactor, NonlinearFactor
from .core.noise_model import (
    Constrained,
    Diagonal,
    Gaussian,
    Isotropic,
    NoiseModel,
    Unit,
)
from .core.types import Key, LinearSystem, format_key, symbol
from .core.values import Values, VectorValues
from .numerical.derivatives import (
    numerical_derivative,
    numerical_derivative11,
    numerical_derivative21,
    numerical_derivative22,
    numerical_derivative31,
    numerical_derivative32,
    numerical_derivative33,
    numerical_gradient,
    numerical_hessian,
    numerical_hessian211,
    numerical_hessian212,
    numerical_hessian222,
    numerical_hessian311,
    numerical_hessian312,
    numerical_hessian313,
    numerical_hessian322,
    numerical_hessian323,
    numerical_hessian333,
)
from .numerical.linearization import (
    JacobianCheckConfig,
    JacobianCheckError,
    check_factor_jacobians,
    numerical_linearization,
)
from .slam.manifold import (
    Chart,
    EuclideanChart,
    Pose3Chart,
    Rot3Chart,
    ScalarChart,
    default_chart,
    get_chart,
)

try:
    __version__ = version("manifold-factors")
except PackageNotFoundError:
    pass

__all__ = [
    "Chart",
    "Constrained",
    "Diagonal",
    "EuclideanChart",
    "Expression",
    "ExpressionFactor",
    "ExpressionFactor2",
    "FactorGraph",
    "Gaussian",
    "Isotropic",
    "JacobianCheckConfig",
    "JacobianCheckError",
    "Key",
    "LinearSystem",
    "NoiseModel",
    "NoiseModelFactor",
    "NonlinearFactor",
    "Pose3Chart",
    "Rot3Chart",
    "ScalarChart",
    "Unit",
    "Values",
    "VectorValues",
    "check_factor_jacobians",
    "default_chart",
    "format_key",
    "get_chart",
    "numerical_derivative",
    "numerical_derivative11",
    "numerical_derivative21",
    "numerical_derivative22",
    "numerical_derivative31",
    "numerical_derivative32",
    "numerical_derivative33",
    "numerical_gradient",
    "numerical_hessian",
    "numerical_hessian211",
    "numerical_hessian212",
    "numerical_hessian222",
    "numerical_hessian311",
    "numerical_hessian312",
    "numerical_hessian313",
    "numerical_hessian322",
    "numerical_hessian323",
    "numerical_hessian333",
    "numerical_linearization",
    "symbol",
]
