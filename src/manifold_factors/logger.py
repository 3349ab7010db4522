# Copyright (c) 2025.
# This file is part of manifold-factors, released under the MIT License.
"""Contains the name for the logger of manifold-factors modules.

``manifold_factors`` uses the standard
`logging <https://docs.python.org/3/library/logging.html>`__ library and never
installs handlers itself. Messages are grouped in levels:

* ``DEBUG``: traces of linearization and Jacobian checks.
* ``WARNING``: something unexpected happened, e.g. a finite-difference
    derivative contains non-finite entries.

Calling applications configure the output for
``manifold_factors.logger.manifold_factors_logger``, e.g.::

    >>> import logging
    >>> logging.basicConfig(
    ...     level=logging.DEBUG,
    ...     format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    ... )
"""
import logging

logger_name = "manifold_factors"
manifold_factors_logger = logging.getLogger(logger_name)
