"""Data structures for adaptivity configuration and results.

Architecture: Params vs Metrics

             Params (input/config)         Metrics (output/results)
             ─────────────────────         ────────────────────────
Global       AdaptParameters               AdaptivityResult
             threshold, strategy...        final space, solutions, stats

Per step     -                             StepRecord
                                           ndof, err_est, cpu_time...
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

import pandas as pd

from .errors import ConfigurationError

if TYPE_CHECKING:
    from .solution import Solution
    from .space import Space

# Highest polynomial order a candidate may reach
MAX_ELEMENT_ORDER = 10

# Hanging nodes of arbitrary level
ARBITRARY_REGULARITY = -1


class RefinementMode(IntEnum):
    """How an element is split. Anisotropic modes apply to quads only."""

    ISO = 0
    # Split by a horizontal line: bottom and top sons
    ANISO_H = 1
    # Split by a vertical line: left and right sons
    ANISO_V = 2


class CandList(str, Enum):
    """Predefined lists of refinement candidates."""

    P_ISO = "p-iso"
    P_ANISO = "p-aniso"
    H_ISO = "h-iso"
    H_ANISO = "h-aniso"
    HP_ISO = "hp-iso"
    HP_ANISO_H = "hp-aniso-h"
    HP_ANISO_P = "hp-aniso-p"
    HP_ANISO = "hp-aniso"

    @property
    def is_h_only(self) -> bool:
        return self in (CandList.H_ISO, CandList.H_ANISO)

    @property
    def is_p_only(self) -> bool:
        return self in (CandList.P_ISO, CandList.P_ANISO)

    @property
    def allows_h_aniso(self) -> bool:
        return self in (CandList.H_ANISO, CandList.HP_ANISO_H, CandList.HP_ANISO)

    @property
    def allows_p_aniso(self) -> bool:
        return self in (CandList.P_ANISO, CandList.HP_ANISO_P, CandList.HP_ANISO)

    def isotropic(self) -> CandList:
        """The same list with all anisotropic candidates removed."""
        if self.is_h_only:
            return CandList.H_ISO
        if self.is_p_only:
            return CandList.P_ISO
        return CandList.HP_ISO


def cand_list_from_adapt_type(adapt_type: int, iso_only: bool = False) -> CandList:
    """Map ADAPT_TYPE (0 = hp, 1 = h, 2 = p) and ISO_ONLY to a candidate list."""
    table = {
        0: (CandList.HP_ANISO, CandList.HP_ISO),
        1: (CandList.H_ANISO, CandList.H_ISO),
        2: (CandList.P_ANISO, CandList.P_ISO),
    }
    if adapt_type not in table:
        raise ConfigurationError(f"Unknown adapt type {adapt_type}, expected 0, 1 or 2")
    aniso, iso = table[adapt_type]
    return iso if iso_only else aniso


# ============================================================================
# Parameters (Input Configuration)
# ============================================================================


@dataclass
class AdaptParameters:
    """Control parameters of the adaptivity loop.

    Parameters
    ----------
    threshold : float
        Marking parameter, its meaning depends on ``strategy``.
    strategy : int
        All strategies compare squared element errors e_k^2.
        0 ... mark elements until sqrt(threshold) of the total squared error
        is processed, elements with equal errors are marked together.
        1 ... mark elements with e_k^2 above threshold times the largest e_k^2.
        2 ... mark elements with e_k^2 / |u_ref|^2 above threshold.
    cand_list : CandList or str
        Candidate list. Ignored when ``adapt_type`` is given.
    adapt_type : int, optional
        0 = hp, 1 = h, 2 = p. Combined with ``iso_only`` into a candidate list.
    iso_only : bool
        Forbid anisotropic candidates.
    mesh_regularity : int
        Maximum level of hanging nodes, -1 for arbitrary.
    conv_exp : float
        Exponent applied to the DOF increase when scoring candidates.
    err_stop : float
        Stop when the error estimate (in percent) drops below this value.
    ndof_stop : int
        Stop when the coarse space has at least this many DOFs.
    """

    threshold: float = 0.3
    strategy: int = 0
    cand_list: CandList = CandList.HP_ANISO
    adapt_type: int | None = None
    iso_only: bool = False
    mesh_regularity: int = ARBITRARY_REGULARITY
    conv_exp: float = 1.0
    err_stop: float = 1.0
    ndof_stop: int = 60000
    order_increase: int = 1
    max_order: int = MAX_ELEMENT_ORDER
    max_steps: int | None = None
    project_coarse: bool = False
    reference_refinement: str = "global"
    max_regularity_passes: int = 100

    def __post_init__(self) -> None:
        if self.adapt_type is not None:
            self.cand_list = cand_list_from_adapt_type(self.adapt_type, self.iso_only)
        else:
            self.cand_list = CandList(self.cand_list)
            if self.iso_only:
                self.cand_list = self.cand_list.isotropic()
        if self.strategy not in (0, 1, 2):
            raise ConfigurationError(f"Unknown strategy {self.strategy}, expected 0, 1 or 2")
        if self.mesh_regularity == 0 or self.mesh_regularity < ARBITRARY_REGULARITY:
            raise ConfigurationError(
                f"Invalid mesh regularity {self.mesh_regularity}, use -1 or a positive level"
            )
        if self.reference_refinement not in ("global", "none"):
            raise ConfigurationError(
                f"Unknown reference refinement '{self.reference_refinement}'"
            )
        if not 1 <= self.max_order <= MAX_ELEMENT_ORDER:
            raise ConfigurationError(f"max_order must lie in [1, {MAX_ELEMENT_ORDER}]")

    @classmethod
    def from_config(cls, cfg: Any) -> AdaptParameters:
        """Build from a mapping (e.g. an OmegaConf node converted to a container)."""
        return cls(**dict(cfg))

    def to_mlflow(self) -> dict:
        """Convert to MLflow-compatible params dict."""
        out = {}
        for k, v in asdict(self).items():
            if isinstance(v, bool):
                v = int(v)
            elif isinstance(v, Enum):
                v = v.value
            elif v is None:
                v = "none"
            out[k] = v
        return out

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_mlflow()])


# ============================================================================
# Results
# ============================================================================


@dataclass
class StepRecord:
    """Statistics of one adaptivity step."""

    iteration: int
    ndof: int
    ndof_ref: int
    err_est: float
    err_exact: float | None = None
    cpu_time: float = 0.0
    n_marked: int = 0


@dataclass
class AdaptivityResult:
    """Outcome of an adaptivity run."""

    space: Space
    solution: Solution
    ref_solution: Solution
    converged: bool
    steps: list[StepRecord] = field(default_factory=list)

    @property
    def stats(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(s) for s in self.steps])

    @property
    def final_error(self) -> float:
        return self.steps[-1].err_est if self.steps else float("inf")
