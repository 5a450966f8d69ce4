"""Error estimation and one hp-adaptivity step on a coarse space."""

from __future__ import annotations

import logging
from enum import Enum

import numpy as np
from numba import njit

from .datastructures import AdaptParameters, RefinementMode
from .errors import ConfigurationError
from .norms import H1Norm, Norm
from .selector import Candidate, Selector
from .solution import Solution, sample_on
from .space import Space

log = logging.getLogger(__name__)

# Relative difference under which two element errors count as equal
TIE_TOLERANCE = 1e-3


class AdaptState(Enum):
    IDLE = "idle"
    MARKING = "marking"
    SCORING = "scoring"
    COMMITTING = "committing"
    RENUMBERING = "renumbering"
    DONE = "done"


@njit
def _mark_fraction(err_sorted, limit, tie_tol):
    """Number of leading (descending) errors needed to process ``limit``.

    Elements whose error ties with the last marked one are marked too.
    """
    n = err_sorted.shape[0]
    processed = 0.0
    for i in range(n):
        err = err_sorted[i]
        if i > 0 and processed >= limit:
            prev = err_sorted[i - 1]
            if prev <= 0.0 or abs(prev - err) / prev > tie_tol:
                return i
        processed += err
    return n


@njit
def _mark_above(err_sorted, limit):
    n = err_sorted.shape[0]
    for i in range(n):
        if err_sorted[i] <= limit:
            return i
    return n


class HpAdapt:
    """Estimates the error of a coarse solution against a reference one and
    modifies the coarse space accordingly.

    One step runs through the states MARKING, SCORING, COMMITTING and
    RENUMBERING; afterwards the adapter returns to IDLE, or DONE once the
    DOF budget is exhausted.
    """

    def __init__(
        self,
        space: Space,
        params: AdaptParameters | None = None,
        norm: Norm | None = None,
        selector: Selector | None = None,
    ) -> None:
        self.space = space
        self.params = params or AdaptParameters()
        self.norm = norm or H1Norm()
        self.selector = selector or Selector(self.params, self.norm, space.kind)
        self.state = AdaptState.IDLE
        self.coarse: Solution | None = None
        self.ref: Solution | None = None
        self.element_ids = np.zeros(0, dtype=np.int64)
        self.error_sq = np.zeros(0)
        self.norm_sq = np.zeros(0)
        self.total_error_sq = 0.0
        self.total_norm_sq = 0.0
        self.decisions: dict[int, Candidate] = {}

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def set_solutions(self, coarse: Solution, ref: Solution) -> None:
        if coarse.space is not self.space:
            raise ConfigurationError("Coarse solution does not belong to the adapted space")
        if coarse.mesh is ref.mesh:
            raise ConfigurationError("Reference solution must live on its own mesh")
        if coarse.is_stale or ref.is_stale:
            raise ConfigurationError("Solution computed on an outdated mesh")
        active = {e.id for e in self.space.mesh.active_elements()}
        if set(coarse.orders) != active:
            raise ConfigurationError("Coarse solution does not cover the active elements")
        self.coarse, self.ref = coarse, ref
        self.error_sq = np.zeros(0)

    def calc_error(self) -> float:
        """Relative error of the coarse solution (a fraction, not percent)."""
        if self.coarse is None or self.ref is None:
            raise ConfigurationError("calc_error() called before set_solutions()")
        mesh = self.space.mesh
        ids, errs, norms = [], [], []
        for e in mesh.active_elements():
            s = sample_on(self.ref, mesh, e.id, self.coarse.element_degree(e.id))
            cv, cg = self.coarse.local_values(e.id, s.xi, s.eta)
            ids.append(e.id)
            errs.append(self.norm.integrate(s.vals - cv, s.grads - cg, s.x, s.y, s.w))
            norms.append(self.norm.integrate(s.vals, s.grads, s.x, s.y, s.w))

        # Sorted by decreasing error, ties by element id
        rank = np.lexsort((np.array(ids), -np.array(errs)))
        self.element_ids = np.array(ids, dtype=np.int64)[rank]
        self.error_sq = np.array(errs)[rank]
        self.norm_sq = np.array(norms)[rank]
        self.total_error_sq = float(self.error_sq.sum())
        self.total_norm_sq = float(self.norm_sq.sum())
        return self.error

    @property
    def error(self) -> float:
        if self.total_norm_sq > 0.0:
            return float(np.sqrt(self.total_error_sq / self.total_norm_sq))
        return float(np.sqrt(self.total_error_sq))

    def element_errors(self, relative: bool = False) -> dict[int, float]:
        """Element error norms keyed by id, in decreasing order."""
        errs = np.sqrt(self.error_sq)
        if relative and self.total_norm_sq > 0.0:
            errs = errs / np.sqrt(self.total_norm_sq)
        return dict(zip(self.element_ids.tolist(), errs.tolist()))

    # ------------------------------------------------------------------
    # Adaptation
    # ------------------------------------------------------------------

    def mark_elements(self) -> list[int]:
        """Elements selected for refinement by the configured strategy."""
        if self.error_sq.size == 0:
            raise ConfigurationError("mark_elements() called before calc_error()")
        thr = self.params.threshold
        strategy = self.params.strategy
        err_sq = self.error_sq
        if strategy == 0:
            n = _mark_fraction(err_sq, np.sqrt(thr) * self.total_error_sq, TIE_TOLERANCE)
        elif strategy == 1:
            n = _mark_above(err_sq, thr * err_sq[0])
        else:
            scale = self.total_norm_sq if self.total_norm_sq > 0.0 else 1.0
            n = _mark_above(err_sq / scale, thr)
        return self.element_ids[:n].tolist()

    def _commit(self, eid: int, cand: Candidate) -> None:
        space = self.space
        if cand.split is None:
            space.set_element_order(eid, cand.orders[0])
            return
        sons = space.mesh.refine_element(eid, RefinementMode(cand.split))
        for son, order in zip(sons, cand.orders):
            space.set_element_order(son, order)

    def adapt(self) -> bool:
        """Run one adaptation step. Returns True when nothing was refined."""
        if self.error_sq.size == 0:
            raise ConfigurationError("adapt() called before calc_error()")

        self.state = AdaptState.MARKING
        marked = self.mark_elements()
        log.debug(f"Marked {len(marked)} of {self.element_ids.size} elements")
        if not marked:
            self.state = AdaptState.DONE
            return True

        self.state = AdaptState.SCORING
        self.decisions = {eid: self.selector.select(self.space, eid, self.ref) for eid in marked}

        self.state = AdaptState.COMMITTING
        for eid in sorted(self.decisions):
            self._commit(eid, self.decisions[eid])
        extra = self.space.mesh.regularize(
            self.params.mesh_regularity, self.params.max_regularity_passes
        )
        if extra:
            log.debug(f"Regularity required {len(extra)} additional refinements")

        self.state = AdaptState.RENUMBERING
        ndof = self.space.assign_dofs(self.space.first_dof)
        self.error_sq = np.zeros(0)
        if ndof >= self.params.ndof_stop:
            log.info(f"DOF limit reached ({ndof} >= {self.params.ndof_stop})")
            self.state = AdaptState.DONE
        else:
            self.state = AdaptState.IDLE
        return False

    @property
    def done(self) -> bool:
        return self.state == AdaptState.DONE
