"""Tests for solutions, norms and projections.

Run with: pytest tests/test_solution.py -v
"""

import numpy as np
import pytest

from hpfem import (
    BC_ESSENTIAL,
    HCURL,
    RIGHT,
    TOP,
    ConfigurationError,
    EnergyNorm,
    H1Norm,
    H1SemiNorm,
    HcurlNorm,
    InteriorLayer,
    L2Norm,
    MeshError,
    ProjectionSolver,
    SingularSystemError,
    SmoothIso,
    Solution,
    Space,
    Vortex,
    build_reference,
    exact_error,
    make_norm,
    project,
    project_function,
    rectangle_mesh,
)
from hpfem.solution import Samples, best_approximation


def poly(x, y):
    return x**2 * y + 3.0


def poly_grad(x, y):
    return np.array([2 * x * y, x**2])


def cubic(x, y):
    return x**3 - x * y**2 + y


def cubic_grad(x, y):
    return np.array([3 * x**2 - y**2, 1 - 2 * x * y])


def rotation(x, y):
    return np.array([-y, x])


def rotation_grad(x, y):
    zero, one = np.zeros_like(x), np.ones_like(x)
    return np.array([[zero, -one], [one, zero]])


def sample_points(n=7, seed=0):
    rng = np.random.default_rng(seed)
    return rng.uniform(0.01, 0.99, size=(n, 2))


def problem_space(problem, order, mesh=None):
    space = Space(mesh or problem.initial_mesh(), problem.kind, bc_types=problem.bc_types,
                  essential_bc_values=problem.essential_bc_values, order=order)
    space.assign_dofs()
    return space


def jump(sln, points, normal, eps=1e-9):
    """Largest difference between the two sides of an interface at given points."""
    out = 0.0
    for x, y in points:
        a = sln.evaluate(x - eps * normal[0], y - eps * normal[1])
        b = sln.evaluate(x + eps * normal[0], y + eps * normal[1])
        out = max(out, float(np.max(np.abs(np.subtract(a, b)))))
    return out


@pytest.fixture
def mesh():
    mesh = rectangle_mesh(2, 2)
    mesh.refine_element(0)
    return mesh


class TestProjectFunction:
    """Global projection of callables."""

    @pytest.mark.parametrize("norm", [H1Norm(), L2Norm(), H1SemiNorm()])
    def test_reproduces_polynomials(self, mesh, norm):
        space = Space(mesh, order=(2, 1))
        space.assign_dofs()
        sln = project_function(space, poly, poly_grad, norm)
        assert sln.coeffs.shape == (space.get_num_dofs(),)
        for x, y in sample_points():
            assert sln.evaluate(x, y) == pytest.approx(poly(x, y))
            assert np.allclose(sln.gradient(x, y), poly_grad(x, y))

    def test_cubic_across_hanging_vertices(self, mesh):
        space = Space(mesh, order=3)
        space.assign_dofs()
        sln = project_function(space, cubic, cubic_grad)
        for x, y in sample_points():
            assert sln.evaluate(x, y) == pytest.approx(cubic(x, y))

    def test_triangles(self):
        space = Space(rectangle_mesh(2, 2, triangles=True), order=2)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: x**2 + x * y - y,
                               lambda x, y: np.array([2 * x + y, x - 1]))
        for x, y in sample_points():
            assert sln.evaluate(x, y) == pytest.approx(x**2 + x * y - y)

    def test_triangle_cubic(self):
        mesh = rectangle_mesh(2, 2, triangles=True)
        mesh.refine_element(0)
        space = Space(mesh, order=3)
        space.assign_dofs()
        sln = project_function(space, cubic, cubic_grad)
        for x, y in sample_points():
            assert sln.evaluate(x, y) == pytest.approx(cubic(x, y))

    def test_without_gradient(self, mesh):
        space = Space(mesh, order=2)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: x * y)
        assert sln.evaluate(0.3, 0.8) == pytest.approx(0.24)

    def test_constant(self, mesh):
        space = Space(mesh, order=1)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: 2.5)
        assert sln.evaluate(0.6, 0.1) == pytest.approx(2.5)

    def test_vector_valued(self):
        space = Space(rectangle_mesh(1, 1), kind=HCURL, order=1)
        space.assign_dofs()
        sln = project_function(space, rotation)
        assert sln.ncomp == 2
        assert np.allclose(sln.evaluate(0.2, 0.7), [-0.7, 0.2])


class TestConformity:
    """Projections are single fields, not element-wise fits."""

    LEFT_EDGE = [(0.5, 0.1), (0.5, 0.3), (0.5, 0.7), (0.5, 0.9)]
    LOWER_EDGE = [(0.1, 0.5), (0.4, 0.5), (0.8, 0.5)]

    def test_continuous_across_shared_edge(self):
        problem = InteriorLayer()
        space = problem_space(problem, 2)
        sln = ProjectionSolver(problem).solve(space)
        assert sln.coeffs.size == space.get_num_dofs() == 25
        assert jump(sln, self.LEFT_EDGE, (1.0, 0.0)) < 1e-6
        assert jump(sln, self.LOWER_EDGE, (0.0, 1.0)) < 1e-6

    @pytest.mark.parametrize("order", [1, 3, (3, 2)])
    def test_continuous_across_hanging_vertices(self, mesh, order):
        problem = InteriorLayer()
        sln = ProjectionSolver(problem).solve(problem_space(problem, order, mesh))
        assert jump(sln, self.LEFT_EDGE, (1.0, 0.0)) < 1e-6
        assert jump(sln, self.LOWER_EDGE, (0.0, 1.0)) < 1e-6

    def test_continuous_on_triangles(self):
        problem = InteriorLayer(triangles=True)
        mesh = problem.initial_mesh()
        mesh.refine_element(0)
        sln = ProjectionSolver(problem).solve(problem_space(problem, 3, mesh))
        assert jump(sln, self.LEFT_EDGE, (1.0, 0.0)) < 1e-6
        assert jump(sln, self.LOWER_EDGE, (0.0, 1.0)) < 1e-6

    @pytest.mark.parametrize("triangles", [False, True])
    def test_tangential_continuity(self, triangles):
        problem = Vortex(triangles=triangles)
        mesh = problem.initial_mesh()
        mesh.refine_element(0)
        sln = ProjectionSolver(problem).solve(problem_space(problem, 2, mesh))
        for x, y in self.LEFT_EDGE:
            left, right = sln.evaluate(x - 1e-9, y), sln.evaluate(x + 1e-9, y)
            assert left[1] == pytest.approx(right[1], abs=1e-6)
        for x, y in self.LOWER_EDGE:
            below, above = sln.evaluate(x, y - 1e-9), sln.evaluate(x, y + 1e-9)
            assert below[0] == pytest.approx(above[0], abs=1e-6)


class TestEssentialValues:
    def test_homogeneous_boundary(self):
        problem = SmoothIso(nx=2, ny=2)
        sln = ProjectionSolver(problem).solve(problem_space(problem, 2))
        assert sln.evaluate(0.0, 1.0) == pytest.approx(0.0, abs=1e-12)
        assert sln.evaluate(np.pi, 2.0) == pytest.approx(0.0, abs=1e-12)
        assert sln.evaluate(1.3, np.pi) == pytest.approx(0.0, abs=1e-12)

    def test_boundary_vertices_interpolated(self):
        problem = InteriorLayer()
        sln = ProjectionSolver(problem).solve(problem_space(problem, 2))
        for x, y in [(0.0, 0.0), (0.5, 0.0), (1.0, 1.0), (0.0, 0.5)]:
            assert sln.evaluate(x, y) == pytest.approx(float(problem.exact(x, y)), rel=1e-10)

    def test_polynomial_boundary_trace(self):
        space = Space(rectangle_mesh(2, 2), bc_types=lambda marker: BC_ESSENTIAL,
                      essential_bc_values=lambda marker, x, y: x**2 + y, order=2)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: np.zeros_like(x), norm=L2Norm())
        for x in (0.1, 0.35, 0.8):
            assert sln.evaluate(x, 0.0) == pytest.approx(x**2)
            assert sln.evaluate(x, 1.0) == pytest.approx(x**2 + 1.0)

    @pytest.mark.parametrize("triangles", [False, True])
    def test_tangential_components(self, triangles):
        # tangential components of (-y, x) along the counter-clockwise boundary
        def tangential(marker, x, y):
            return {RIGHT: 1.0, TOP: 1.0}.get(marker, 0.0)

        space = Space(rectangle_mesh(2, 2, triangles=triangles), HCURL,
                      bc_types=lambda marker: BC_ESSENTIAL, essential_bc_values=tangential,
                      order=1)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: np.zeros((2, x.size)), norm=L2Norm())
        assert sln.evaluate(1.0, 0.3)[1] == pytest.approx(1.0)
        assert sln.evaluate(0.4, 1.0)[0] == pytest.approx(-1.0)
        assert sln.evaluate(0.2, 0.0)[0] == pytest.approx(0.0, abs=1e-12)
        assert sln.evaluate(0.0, 0.6)[1] == pytest.approx(0.0, abs=1e-12)


class TestComplexValues:
    def test_complex_coefficients(self):
        space = Space(rectangle_mesh(1, 1), order=1)
        space.assign_dofs()
        coeffs = np.zeros(space.get_num_dofs(), dtype=complex)
        coeffs[space.vertex_dofs[0]] = 1 + 2j
        sln = Solution(space, coeffs)
        assert sln.coeffs.dtype == np.complex128
        assert sln.evaluate(0.0, 0.0) == pytest.approx(1 + 2j)
        assert sln.evaluate(0.5, 0.5) == pytest.approx(0.25 + 0.5j)

    def test_complex_projection(self, mesh):
        space = Space(mesh, order=2)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: (1 + 1j) * x * y,
                               lambda x, y: np.array([(1 + 1j) * y, (1 + 1j) * x]))
        assert sln.evaluate(0.3, 0.4) == pytest.approx((1 + 1j) * 0.12)
        assert sln.norm(L2Norm()) == pytest.approx(np.sqrt(2.0 / 9.0))


class TestHcurl:
    @pytest.mark.parametrize("order", [0, 1, 2])
    @pytest.mark.parametrize("triangles", [False, True])
    def test_rotation_reproduced(self, order, triangles):
        mesh = rectangle_mesh(2, 2, triangles=triangles)
        mesh.refine_element(0)
        space = Space(mesh, HCURL, order=order)
        space.assign_dofs()
        sln = project_function(space, rotation, rotation_grad, HcurlNorm())
        assert exact_error(sln, rotation, rotation_grad, HcurlNorm()) < 1e-10
        assert np.allclose(sln.evaluate(0.3, 0.8), [-0.8, 0.3])

    def test_vortex_error_decreases_with_order(self):
        problem = Vortex()
        errors = [
            exact_error(ProjectionSolver(problem).solve(problem_space(problem, p)),
                        problem.exact, problem.gradient, problem.energy_norm())
            for p in (1, 3)
        ]
        assert errors[1] < errors[0]

    def test_component_mismatch(self):
        space = Space(rectangle_mesh(1, 1), order=1)
        space.assign_dofs()
        with pytest.raises(ConfigurationError):
            ProjectionSolver(Vortex()).solve(space)


class TestNorms:
    def test_l2_of_constant(self):
        space = Space(rectangle_mesh(2, 2), order=1)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: 1.0)
        assert sln.norm(L2Norm()) == pytest.approx(1.0)

    def test_h1_of_linear(self):
        space = Space(rectangle_mesh(2, 2), order=1)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: x, lambda x, y: np.array([np.ones_like(x), np.zeros_like(x)]))
        assert sln.norm(H1Norm()) == pytest.approx(np.sqrt(4.0 / 3.0))
        assert sln.norm(H1SemiNorm()) == pytest.approx(1.0)

    def test_energy_norm(self):
        space = Space(rectangle_mesh(1, 1), order=1)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: 1.0)
        assert sln.norm(EnergyNorm(diffusion=1.0, reaction=4.0)) == pytest.approx(2.0)
        assert EnergyNorm(reaction=0.0).has_mass is False
        assert EnergyNorm(reaction=lambda x, y: x).has_mass is True

    def test_hcurl(self):
        space = Space(rectangle_mesh(1, 1), kind=HCURL, order=1)
        space.assign_dofs()
        sln = project_function(space, rotation, rotation_grad, HcurlNorm())
        assert sln.norm(HcurlNorm()) == pytest.approx(np.sqrt(2.0 / 3.0 + 4.0))

    def test_make_norm(self):
        assert isinstance(make_norm("h1-semi"), H1SemiNorm)
        assert make_norm("energy", reaction=2.0).reaction == 2.0
        with pytest.raises(ConfigurationError):
            make_norm("sobolev")


class TestProjectSolution:
    """Transfer between coarse, reference and unrelated meshes."""

    def test_coarse_to_reference(self, mesh):
        space = Space(mesh, order=2)
        space.assign_dofs()
        coarse = project_function(space, lambda x, y: np.sin(3 * x) * y,
                                  lambda x, y: np.array([3 * np.cos(3 * x) * y, np.sin(3 * x)]))
        ref = build_reference(space)
        fine = project(coarse, ref.space)
        for x, y in sample_points():
            assert fine.evaluate(x, y) == pytest.approx(coarse.evaluate(x, y))

    def test_reference_to_coarse(self, mesh):
        space = Space(mesh, order=2)
        space.assign_dofs()
        ref = build_reference(space)
        fine = project_function(ref.space, poly, poly_grad)
        back = project(fine, space)
        assert back.space is space
        for x, y in sample_points():
            assert back.evaluate(x, y) == pytest.approx(poly(x, y))

    def test_unrelated_meshes(self):
        src_space = Space(rectangle_mesh(3, 3), order=2)
        src_space.assign_dofs()
        src = project_function(src_space, lambda x, y: x**2 + y,
                               lambda x, y: np.array([2 * x, np.ones_like(y)]))
        dst_space = Space(rectangle_mesh(2, 2, triangles=True), order=2)
        dst_space.assign_dofs()
        dst = project(src, dst_space)
        for x, y in sample_points():
            assert dst.evaluate(x, y) == pytest.approx(x**2 + y)

    def test_component_mismatch(self):
        space = Space(rectangle_mesh(1, 1), order=1)
        space.assign_dofs()
        src = project_function(space, poly, poly_grad)
        target = Space(rectangle_mesh(1, 1), HCURL, order=1)
        target.assign_dofs()
        with pytest.raises(ConfigurationError):
            project(src, target)


class TestExactError:
    def test_zero_for_exact(self, mesh):
        space = Space(mesh, order=(2, 1))
        space.assign_dofs()
        sln = project_function(space, poly, poly_grad)
        assert exact_error(sln, poly, poly_grad) < 1e-10

    def test_zero_solution(self):
        space = Space(rectangle_mesh(1, 1), order=1)
        space.assign_dofs()
        sln = Solution(space, np.zeros(space.get_num_dofs()))
        assert exact_error(sln, poly, poly_grad) == pytest.approx(1.0)
        one = exact_error(sln, lambda x, y: 1.0, lambda x, y: np.zeros((2, x.size)),
                          L2Norm(), relative=False)
        assert one == pytest.approx(1.0)

    def test_stale_solution(self):
        mesh = rectangle_mesh(1, 1)
        space = Space(mesh, order=1)
        space.assign_dofs()
        sln = project_function(space, poly, poly_grad)
        mesh.refine_element(0)
        assert sln.is_stale
        with pytest.raises(MeshError):
            exact_error(sln, poly, poly_grad)


class TestSolution:
    def test_wrong_length(self):
        space = Space(rectangle_mesh(2, 1), order=1)
        space.assign_dofs()
        with pytest.raises(ConfigurationError):
            Solution(space, np.zeros(space.get_num_dofs() + 1))

    def test_unenumerated_space(self):
        space = Space(rectangle_mesh(2, 1), order=1)
        with pytest.raises(ConfigurationError):
            Solution(space, np.zeros(6))

    def test_missing_element(self):
        space = Space(rectangle_mesh(2, 1), order=1)
        space.assign_dofs()
        sln = Solution(space, np.zeros(space.get_num_dofs()))
        sons = space.mesh.refine_element(0)
        with pytest.raises(ConfigurationError):
            sln.evaluate_local(sons[0], 0.0, 0.0)

    def test_evaluable_after_adaptation(self):
        space = Space(rectangle_mesh(2, 1), order=1)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: x + y,
                               lambda x, y: np.array([np.ones_like(x), np.ones_like(y)]))
        space.set_element_order(1, 3)
        space.assign_dofs()
        assert sln.is_stale
        assert sln.evaluate_local(1, 0.0, 0.0) == pytest.approx(1.25)

    def test_samples_under_cover_parent(self, mesh):
        space = Space(mesh, order=1)
        space.assign_dofs()
        sln = project_function(space, lambda x, y: 1.0)
        ref = build_reference(space)
        fine = project(sln, ref.space)
        s = fine.samples_under(0)
        # area of the parent element
        assert s.w.sum() == pytest.approx(0.25)
        assert np.all(np.abs(s.xi) <= 1.0) and np.all(np.abs(s.eta) <= 1.0)

    def test_singular_local_system(self):
        npts = 4
        zeros = np.zeros(npts)
        s = Samples(zeros, zeros, zeros, zeros, np.ones(npts),
                    np.ones((1, npts)), np.zeros((1, 2, npts)))
        with pytest.raises(SingularSystemError):
            best_approximation(np.zeros((2, 1, npts)), np.zeros((2, 1, 2, npts)), s, L2Norm())
