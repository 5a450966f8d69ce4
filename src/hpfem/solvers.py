"""Solver interface consumed by the adaptivity driver."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

from .errors import ConfigurationError
from .norms import Norm
from .problems import Problem
from .solution import Solution, project_function
from .space import Space

log = logging.getLogger(__name__)


class Solver(ABC):
    """Anything that turns an enumerated space into a discrete solution."""

    @abstractmethod
    def solve(self, space: Space) -> Solution:
        """Solve on ``space``. Raises SolverError on failure."""


class ProjectionSolver(Solver):
    """Best approximation of a problem's exact solution in the energy norm.

    Stands in for assembly plus a linear solve: for a symmetric problem the
    Galerkin solution is the energy projection of the exact solution onto
    the space, with the same essential boundary values.
    """

    def __init__(self, problem: Problem, norm: Norm | None = None) -> None:
        self.problem = problem
        self.norm = norm or problem.energy_norm()
        self.calls = 0
        self.wall_time = 0.0

    def solve(self, space: Space) -> Solution:
        if space.is_stale:
            raise ConfigurationError("Space must be enumerated before solving")
        if space.kind.ncomp != self.problem.ncomp:
            raise ConfigurationError(
                f"{type(self.problem).__name__} has {self.problem.ncomp} components, "
                f"the {space.kind.name} space {space.kind.ncomp}"
            )
        t0 = time.perf_counter()
        sln = project_function(space, self.problem.exact, self.problem.gradient, self.norm)
        self.calls += 1
        self.wall_time += time.perf_counter() - t0
        log.debug(f"Solved on {space.get_num_dofs()} DOFs in {time.perf_counter() - t0:.3f}s")
        return sln
