"""The hp-adaptivity loop."""

from __future__ import annotations

import logging
import time
from itertools import count
from typing import Callable, Protocol

from .adapt import HpAdapt
from .datastructures import AdaptivityResult, AdaptParameters, StepRecord
from .errors import SolverError
from .mesh import Mesh
from .norms import H1SemiNorm, Norm
from .reference import build_reference
from .solution import Solution, project
from .solvers import Solver
from .space import Space

log = logging.getLogger(__name__)


class Observer(Protocol):
    """Receives a read-only snapshot after every solved step."""

    def __call__(self, record: StepRecord, mesh: Mesh, orders: dict) -> None: ...


def run_adaptivity(
    space: Space,
    solver: Solver,
    params: AdaptParameters | None = None,
    norm: Norm | None = None,
    exact: Callable[[Solution], float] | None = None,
    observer: Observer | None = None,
) -> AdaptivityResult:
    """Adapt ``space`` until the error estimate or the DOF budget stops it.

    Each step builds a reference space, solves on it (and on the coarse space
    unless ``params.project_coarse`` is set), estimates the error and adapts
    the coarse space in place.

    Parameters
    ----------
    space : Space
        Coarse space, modified in place.
    solver : Solver
        Provides ``solve(space) -> Solution``.
    params : AdaptParameters, optional
    norm : Norm, optional
        Norm of the error estimate. Defaults to the solver's norm if it has
        one, otherwise the H1 seminorm.
    exact : callable, optional
        Relative exact error of a coarse solution, reported alongside the
        estimate.
    observer : callable, optional
        Called as ``observer(record, mesh_copy, orders)`` after every step.

    Returns
    -------
    AdaptivityResult
    """
    params = params or AdaptParameters()
    norm = norm or getattr(solver, "norm", None) or H1SemiNorm()
    adapter = HpAdapt(space, params, norm)
    if space.is_stale:
        space.assign_dofs(space.first_dof)

    steps: list[StepRecord] = []
    converged = False
    cpu_time = 0.0
    sln = ref_sln = None
    for it in count(1):
        t0 = time.process_time()
        log.info(f"---- Adaptivity step {it}:")
        ref = build_reference(space, params.order_increase, params.reference_refinement)
        try:
            ref_sln = solver.solve(ref.space)
            sln = project(ref_sln, space, norm) if params.project_coarse else solver.solve(space)
        except SolverError as exc:
            log.error(f"Solver failed in adaptivity step {it}: {exc}")
            raise
        ref.set_solution(ref_sln)

        ndof, ndof_ref = space.get_num_dofs(), ref.space.get_num_dofs()
        adapter.set_solutions(sln, ref_sln)
        err_est = adapter.calc_error() * 100
        err_exact = exact(sln) * 100 if exact is not None else None
        log.info(f"ndof_coarse: {ndof}, ndof_fine: {ndof_ref}")
        if err_exact is None:
            log.info(f"err_est: {err_est:.4f}%")
        else:
            log.info(f"err_est: {err_est:.4f}%, err_exact: {err_exact:.4f}%")

        record = StepRecord(it, ndof, ndof_ref, err_est, err_exact)
        steps.append(record)
        if observer is not None:
            observer(record, space.mesh.copy(), {e.id: space.get_element_order(e.id)
                                                 for e in space.mesh.active_elements()})

        stop = True
        if err_est < params.err_stop:
            converged = True
        elif params.max_steps is not None and it >= params.max_steps:
            log.info(f"Step limit reached ({params.max_steps})")
        else:
            nothing_marked = adapter.adapt()
            record.n_marked = 0 if nothing_marked else len(adapter.decisions)
            stop = nothing_marked or adapter.done
        cpu_time += time.process_time() - t0
        record.cpu_time = cpu_time
        if stop:
            break

    log.info(
        f"Adaptivity finished after {len(steps)} steps: ndof {space.get_num_dofs()}, "
        f"err_est {steps[-1].err_est:.4f}% ({'converged' if converged else 'not converged'})"
    )
    return AdaptivityResult(space, sln, ref_sln, converged, steps)
