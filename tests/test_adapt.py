"""Tests for error estimation, marking and the adaptation step.

Run with: pytest tests/test_adapt.py -v
"""

import numpy as np
import pytest

from hpfem import (
    AdaptParameters,
    AdaptState,
    CandList,
    ConfigurationError,
    H1Norm,
    HpAdapt,
    InteriorLayer,
    ProjectionSolver,
    SmoothIso,
    Space,
    build_reference,
    project,
    project_function,
    rectangle_mesh,
)
from hpfem.adapt import TIE_TOLERANCE, _mark_above, _mark_fraction


def make_space(problem, order=1):
    space = Space(problem.initial_mesh(), problem.kind, bc_types=problem.bc_types,
                  essential_bc_values=problem.essential_bc_values, order=order)
    space.assign_dofs()
    return space


def solve_pair(problem, space):
    """Coarse and reference solutions of a problem."""
    solver = ProjectionSolver(problem)
    ref = build_reference(space)
    return solver.solve(space), solver.solve(ref.space)


def primed(adapter, ids, error_sq, norm_sq):
    """Adapter with given (sorted) element errors."""
    adapter.element_ids = np.array(ids, dtype=np.int64)
    adapter.error_sq = np.array(error_sq, dtype=np.float64)
    adapter.norm_sq = np.array(norm_sq, dtype=np.float64)
    adapter.total_error_sq = float(adapter.error_sq.sum())
    adapter.total_norm_sq = float(adapter.norm_sq.sum())
    return adapter


class TestMarkingKernels:
    def test_fraction(self):
        err = np.array([4.0, 3.0, 1.0, 1.0, 1.0])
        assert _mark_fraction(err, 5.0, TIE_TOLERANCE) == 2

    def test_fraction_includes_ties(self):
        err = np.array([3.0, 3.0, 3.0, 1.0])
        assert _mark_fraction(err, 2.0, TIE_TOLERANCE) == 3

    def test_fraction_near_ties(self):
        err = np.array([3.0, 3.0 * (1 - 0.5 * TIE_TOLERANCE), 1.0])
        assert _mark_fraction(err, 1.0, TIE_TOLERANCE) == 2

    def test_fraction_marks_at_least_one(self):
        assert _mark_fraction(np.array([5.0, 1.0]), 0.0, TIE_TOLERANCE) == 1

    def test_above(self):
        assert _mark_above(np.array([5.0, 4.0, 1.0]), 3.0) == 2
        assert _mark_above(np.array([5.0, 4.0]), 5.0) == 0


class TestStrategies:
    @pytest.fixture
    def space(self):
        space = Space(rectangle_mesh(3, 1), order=1)
        space.assign_dofs()
        return space

    def test_strategy_0(self, space):
        adapter = primed(HpAdapt(space, AdaptParameters(strategy=0, threshold=0.25)),
                         [2, 0, 1], [16.0, 4.0, 1.0], [40.0, 40.0, 20.0])
        assert adapter.mark_elements() == [2]

    @pytest.mark.parametrize("threshold, marked", [(0.2, [2, 0]), (0.4, [2])])
    def test_strategy_1(self, space, threshold, marked):
        adapter = primed(HpAdapt(space, AdaptParameters(strategy=1, threshold=threshold)),
                         [2, 0, 1], [16.0, 4.0, 1.0], [40.0, 40.0, 20.0])
        # squared errors against threshold * 16
        assert adapter.mark_elements() == marked

    @pytest.mark.parametrize("threshold, marked", [(0.1, [2]), (0.03, [2, 0])])
    def test_strategy_2(self, space, threshold, marked):
        adapter = primed(HpAdapt(space, AdaptParameters(strategy=2, threshold=threshold)),
                         [2, 0, 1], [16.0, 4.0, 1.0], [40.0, 40.0, 20.0])
        # squared errors relative to the squared norm: 0.16, 0.04, 0.01
        assert adapter.mark_elements() == marked

    def test_strategies_share_the_squared_measure(self, space):
        """Strategy 1 at threshold t and strategy 2 at t * max share marks the same elements."""
        data = ([2, 0, 1], [16.0, 4.0, 1.0], [40.0, 40.0, 20.0])
        by_max = primed(HpAdapt(space, AdaptParameters(strategy=1, threshold=0.2)), *data)
        by_norm = primed(HpAdapt(space, AdaptParameters(strategy=2, threshold=0.2 * 0.16)), *data)
        assert by_max.mark_elements() == by_norm.mark_elements() == [2, 0]

    def test_invalid_strategy(self):
        with pytest.raises(ConfigurationError):
            AdaptParameters(strategy=3)


class TestEstimate:
    def test_exact_reproduction(self):
        space = Space(rectangle_mesh(2, 2), order=1)
        space.assign_dofs()
        ref = build_reference(space)

        def f(x, y):
            return 1.0 + 2.0 * x - y

        def g(x, y):
            return np.array([2.0 + 0 * x, -1.0 + 0 * y])

        adapter = HpAdapt(space, norm=H1Norm())
        adapter.set_solutions(project_function(space, f, g), project_function(ref.space, f, g))
        assert adapter.calc_error() < 1e-10

    def test_sorted_errors(self):
        problem = InteriorLayer()
        space = make_space(problem)
        adapter = HpAdapt(space, norm=problem.energy_norm())
        adapter.set_solutions(*solve_pair(problem, space))
        err = adapter.calc_error()
        assert err > 0.0
        errors = list(adapter.element_errors().values())
        assert errors == sorted(errors, reverse=True)
        assert set(adapter.element_errors()) == {e.id for e in space.mesh.active_elements()}
        assert adapter.error == pytest.approx(err)

    def test_relative_marking(self):
        problem = InteriorLayer()
        space = make_space(problem)
        adapter = HpAdapt(space, AdaptParameters(strategy=2, threshold=0.01), problem.energy_norm())
        adapter.set_solutions(*solve_pair(problem, space))
        adapter.calc_error()
        rel = adapter.element_errors(relative=True)
        assert set(adapter.mark_elements()) == {eid for eid, r in rel.items() if r**2 > 0.01}

    def test_refinement_reduces_error(self):
        """With a fixed reference, refining the worst element does not increase the error.

        Natural boundary conditions keep the refined space a superset of the coarse one.
        """
        problem = SmoothIso(nx=2, ny=2)
        space = Space(problem.initial_mesh(), order=1)
        space.assign_dofs()
        ref = build_reference(space)
        ref_sln = ProjectionSolver(problem).solve(ref.space)
        adapter = HpAdapt(space, norm=H1Norm())
        adapter.set_solutions(project(ref_sln, space, H1Norm()), ref_sln)
        before = adapter.calc_error()

        space.mesh.refine_element(int(adapter.element_ids[0]))
        space.assign_dofs()
        adapter.set_solutions(project(ref_sln, space, H1Norm()), ref_sln)
        assert adapter.calc_error() <= before + 1e-12


class TestMisuse:
    @pytest.fixture
    def setup(self):
        problem = SmoothIso()
        space = make_space(problem)
        return problem, space, solve_pair(problem, space)

    def test_calc_before_set(self, setup):
        _, space, _ = setup
        with pytest.raises(ConfigurationError):
            HpAdapt(space).calc_error()

    def test_mark_before_calc(self, setup):
        _, space, (sln, ref_sln) = setup
        adapter = HpAdapt(space)
        adapter.set_solutions(sln, ref_sln)
        with pytest.raises(ConfigurationError):
            adapter.mark_elements()
        with pytest.raises(ConfigurationError):
            adapter.adapt()

    def test_foreign_space(self, setup):
        problem, space, (sln, ref_sln) = setup
        with pytest.raises(ConfigurationError):
            HpAdapt(make_space(problem)).set_solutions(sln, ref_sln)

    def test_same_mesh(self, setup):
        _, space, (sln, _) = setup
        with pytest.raises(ConfigurationError):
            HpAdapt(space).set_solutions(sln, sln)

    def test_stale_solution(self, setup):
        _, space, (sln, ref_sln) = setup
        space.mesh.refine_element(0)
        with pytest.raises(ConfigurationError):
            HpAdapt(space).set_solutions(sln, ref_sln)


class TestAdaptStep:
    def test_single_element_h_iso(self):
        problem = SmoothIso()
        space = make_space(problem)
        assert space.get_num_dofs() == 4
        params = AdaptParameters(cand_list=CandList.H_ISO, strategy=0, threshold=0.3)
        adapter = HpAdapt(space, params, problem.energy_norm())
        adapter.set_solutions(*solve_pair(problem, space))
        adapter.calc_error()
        assert adapter.adapt() is False
        assert adapter.state == AdaptState.IDLE
        assert len(space.mesh.elements[0].sons) == 4
        assert space.get_num_dofs() == 9
        assert not space.is_stale

    def test_ties_marked_together(self):
        problem = SmoothIso(nx=2, ny=2)
        space = make_space(problem)
        adapter = HpAdapt(space, AdaptParameters(strategy=0, threshold=0.3), problem.energy_norm())
        adapter.set_solutions(*solve_pair(problem, space))
        adapter.calc_error()
        assert sorted(adapter.mark_elements()) == [0, 1, 2, 3]

    def test_nothing_marked(self):
        problem = SmoothIso(nx=2, ny=2)
        space = make_space(problem)
        adapter = HpAdapt(space, AdaptParameters(strategy=1, threshold=1.0), problem.energy_norm())
        adapter.set_solutions(*solve_pair(problem, space))
        adapter.calc_error()
        assert adapter.adapt() is True
        assert adapter.done
        assert space.mesh.num_active_elements == 4

    def test_dof_limit(self):
        problem = SmoothIso()
        space = make_space(problem)
        params = AdaptParameters(cand_list=CandList.H_ISO, ndof_stop=5)
        adapter = HpAdapt(space, params, problem.energy_norm())
        adapter.set_solutions(*solve_pair(problem, space))
        adapter.calc_error()
        assert adapter.adapt() is False
        assert adapter.done

    def test_hp_decisions_applied(self):
        problem = InteriorLayer()
        space = make_space(problem)
        adapter = HpAdapt(space, AdaptParameters(cand_list=CandList.HP_ANISO), problem.energy_norm())
        adapter.set_solutions(*solve_pair(problem, space))
        adapter.calc_error()
        adapter.adapt()
        assert adapter.decisions
        mesh = space.mesh
        for eid, cand in adapter.decisions.items():
            e = mesh.elements[eid]
            if cand.split is None:
                assert e.active
                assert space.get_element_order(eid) == cand.orders[0]
            else:
                assert e.split == cand.split
                assert [space.get_element_order(s) for s in e.sons] == list(cand.orders)

    def test_regularity_enforced(self):
        problem = InteriorLayer()
        space = make_space(problem)
        params = AdaptParameters(cand_list=CandList.H_ISO, mesh_regularity=1)
        norm = problem.energy_norm()
        for _ in range(3):
            adapter = HpAdapt(space, params, norm)
            adapter.set_solutions(*solve_pair(problem, space))
            adapter.calc_error()
            adapter.adapt()
        mesh = space.mesh
        assert max(mesh.hanging_level(*k) for k in mesh.active_edge_map()) <= 1
