"""Exception types raised by the adaptivity core."""


class HpFemError(Exception):
    """Base class for all hpfem errors."""


class MeshError(HpFemError):
    """Invalid mesh operation (unknown or inactive element, bad split mode)."""


class ConfigurationError(HpFemError):
    """Caller misuse: mismatched spaces/meshes, stale DOFs, bad parameters."""


class RegularityError(MeshError):
    """Hanging-node regularity could not be restored within the pass limit."""


class SolverError(HpFemError):
    """Raised by a solver collaborator when no solution could be computed."""


class SingularSystemError(SolverError):
    pass


class ConvergenceError(SolverError):
    pass
