"""Construction of the reference (fine) discretization for one adaptivity step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import ConfigurationError
from .mesh import Mesh
from .solution import Solution
from .space import Space

log = logging.getLogger(__name__)

REFINEMENTS = ("global", "none")


@dataclass
class ReferenceProblem:
    """Reference mesh and space built from a coarse space.

    The reference mesh is a copy of the coarse mesh, so element ids of the
    coarse active elements stay valid and map onto their reference sons.
    """

    coarse: Space
    order_increase: int = 1
    refinement: str = "global"
    mesh: Mesh = field(init=False)
    space: Space = field(init=False)
    solution: Solution | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        if self.refinement not in REFINEMENTS:
            raise ConfigurationError(
                f"Unknown reference refinement '{self.refinement}', expected one of {REFINEMENTS}"
            )
        if self.order_increase < 0:
            raise ConfigurationError("order_increase must be non-negative")
        self.mesh = self.coarse.mesh.copy()
        if self.refinement == "global":
            self.mesh.refine_all_elements()
        elif self.order_increase == 0:
            raise ConfigurationError("A reference without refinement needs order_increase > 0")
        self.space = self.coarse.dup(self.mesh)
        self.space.copy_orders(self.coarse, self.order_increase)
        self.space.assign_dofs()
        log.debug(
            f"Reference space: {self.mesh.num_active_elements} elements, "
            f"{self.space.get_num_dofs()} DOFs"
        )

    def set_solution(self, solution: Solution) -> None:
        """Accept an externally computed solution on the reference space."""
        if solution.space is not self.space:
            raise ConfigurationError("Solution does not belong to the reference space")
        self.solution = solution


def build_reference(space: Space, order_increase: int = 1, refinement: str = "global") -> ReferenceProblem:
    return ReferenceProblem(space, order_increase, refinement)
