"""hp-adaptive finite element core for 2D meshes.

Builds a reference (fine) discretization each step, estimates the error of
the coarse solution against it and refines the coarse space in h, p or both.

Main components:
- Mesh: element arena with a refinement tree and hanging-node bookkeeping
- Space: polynomial orders and DOF enumeration (H1, H(curl), L2)
- Solution, project: DOF coefficient vectors and global projections
- HpAdapt, Selector: error estimation, marking and candidate selection
- run_adaptivity: the adaptivity loop
"""

from .datastructures import (
    ARBITRARY_REGULARITY,
    MAX_ELEMENT_ORDER,
    AdaptivityResult,
    AdaptParameters,
    CandList,
    RefinementMode,
    StepRecord,
    cand_list_from_adapt_type,
)
from .errors import (
    ConfigurationError,
    ConvergenceError,
    HpFemError,
    MeshError,
    RegularityError,
    SingularSystemError,
    SolverError,
)
from .mesh import BOTTOM, LEFT, RIGHT, TOP, Mesh, rectangle_mesh
from .space import BC_ESSENTIAL, BC_NATURAL, H1, HCURL, L2, Space, SpaceKind, assign_dofs
from .norms import EnergyNorm, H1Norm, H1SemiNorm, HcurlNorm, L2Norm, Norm, make_norm
from .solution import Solution, exact_error, project, project_function
from .reference import ReferenceProblem, build_reference
from .selector import Candidate, Selector
from .adapt import AdaptState, HpAdapt
from .problems import InteriorLayer, Layer, Problem, SmoothIso, Vortex
from .solvers import ProjectionSolver, Solver
from .driver import run_adaptivity

__all__ = [
    # Configuration and results
    "ARBITRARY_REGULARITY",
    "MAX_ELEMENT_ORDER",
    "AdaptParameters",
    "AdaptivityResult",
    "CandList",
    "RefinementMode",
    "StepRecord",
    "cand_list_from_adapt_type",
    # Errors
    "HpFemError",
    "MeshError",
    "ConfigurationError",
    "RegularityError",
    "SolverError",
    "SingularSystemError",
    "ConvergenceError",
    # Mesh
    "Mesh",
    "rectangle_mesh",
    "BOTTOM",
    "RIGHT",
    "TOP",
    "LEFT",
    # Spaces
    "Space",
    "SpaceKind",
    "H1",
    "HCURL",
    "L2",
    "BC_ESSENTIAL",
    "BC_NATURAL",
    "assign_dofs",
    # Norms and solutions
    "Norm",
    "H1Norm",
    "L2Norm",
    "H1SemiNorm",
    "HcurlNorm",
    "EnergyNorm",
    "make_norm",
    "Solution",
    "project",
    "project_function",
    "exact_error",
    # Adaptivity
    "ReferenceProblem",
    "build_reference",
    "Candidate",
    "Selector",
    "AdaptState",
    "HpAdapt",
    "run_adaptivity",
    # Problems and solvers
    "Problem",
    "Layer",
    "SmoothIso",
    "InteriorLayer",
    "Vortex",
    "Solver",
    "ProjectionSolver",
]
