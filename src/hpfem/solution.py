"""Finite element solutions, sampling and projections between spaces.

A solution is a coefficient vector over the DOFs of an enumerated space.
Projections assemble the normal equations of a global best approximation
with scipy.sparse and fix the essential DOFs to the space's boundary
values.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Callable

import numpy as np
import scipy.linalg
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from numpy.typing import NDArray

from .errors import ConfigurationError, MeshError, SingularSystemError
from .mesh import Mesh
from .norms import H1Norm, L2Norm, Norm
from .quadrature import element_rule, points_for_order
from .shapeset import physical_shapes
from .space import AsmList, Space

log = logging.getLogger(__name__)


def _normal_equations(F, T, w):
    """Gram matrix and right-hand side of a least-squares fit of terms T by shape terms F."""
    A = sum((Fi * (w * wt)) @ Fi.T for Fi, (_, wt) in zip(F, T))
    b = sum(Fi @ (w * wt * t) for Fi, (t, wt) in zip(F, T))
    return A, b


def best_approximation(vals, grads, samples: Samples, norm: Norm):
    """Best approximation of sampled data in the span of given shape functions.

    Parameters
    ----------
    vals, grads : ndarray
        Shape values (nsh, ncomp, npts) and physical gradients
        (nsh, ncomp, 2, npts) at the sample points.

    Returns
    -------
    coeffs : ndarray, shape (nsh,)
    err_sq : float
        Squared norm of the approximation error.
    """
    x, y, w = samples.x, samples.y, samples.w
    F = norm.shape_terms(vals, grads, x, y)
    T = norm.terms(samples.vals, samples.grads, x, y)
    fit_F, fit_T = list(F), list(T)
    if not norm.has_mass:
        # seminorms leave constants undetermined
        one = np.ones_like(w)
        fit_F += [vals[:, c] for c in range(vals.shape[1])]
        fit_T += [(samples.vals[c], one) for c in range(vals.shape[1])]

    G, r = _normal_equations(fit_F, fit_T, w)
    try:
        coef = scipy.linalg.solve(G, r, assume_a="sym")
    except (np.linalg.LinAlgError, scipy.linalg.LinAlgError) as exc:
        raise SingularSystemError(f"Local projection matrix is singular: {exc}") from exc

    err_sq = 0.0
    for Fi, (t, wt) in zip(F, T):
        err_sq += float(np.sum(w * wt * np.abs(t - coef @ Fi) ** 2))
    return coef, err_sq


@dataclass
class Samples:
    """Quadrature data over one element.

    xi, eta are reference coordinates of the element the samples belong to,
    w are physical weights (reference weight times |det J|).
    """

    xi: NDArray
    eta: NDArray
    x: NDArray
    y: NDArray
    w: NDArray
    vals: NDArray
    grads: NDArray

    @classmethod
    def concat(cls, parts: list[Samples]) -> Samples:
        return cls(
            *(np.concatenate([getattr(p, f) for p in parts], axis=-1)
              for f in ("xi", "eta", "x", "y", "w", "vals", "grads"))
        )


class Solution:
    """Coefficient vector over the DOFs of an enumerated space.

    The vector is expanded into local shape coefficients of every active
    element when the solution is created, so it can still be evaluated
    after its space has been adapted; ``is_stale`` tells when that happened.
    Complex coefficients are kept as such.
    """

    def __init__(self, space: Space, coeffs) -> None:
        ndof = space.get_num_dofs()
        coeffs = np.asarray(coeffs)
        if not np.iscomplexobj(coeffs):
            coeffs = coeffs.astype(np.float64)
        if coeffs.shape != (ndof,):
            raise ConfigurationError(
                f"Expected {ndof} coefficients for the space, got shape {coeffs.shape}"
            )
        self.space = space
        self.mesh = space.mesh
        self.ncomp = space.kind.ncomp
        self.coeffs = coeffs
        self._local: dict[int, tuple[AsmList, NDArray]] = {}
        for e in self.mesh.active_elements():
            asm = space.assembly_list(e.id)
            self._local[e.id] = (asm, asm.coef @ coeffs[asm.dofs - space.first_dof])
        self.orders = {eid: asm.order for eid, (asm, _) in self._local.items()}
        self._enumeration = space.enumeration

    @property
    def is_stale(self) -> bool:
        return self.space.is_stale or self._enumeration != self.space.enumeration

    def _element(self, eid: int) -> tuple[AsmList, NDArray]:
        try:
            return self._local[eid]
        except KeyError:
            raise ConfigurationError(f"Solution has no data on element {eid}") from None

    def element_degree(self, eid: int) -> int:
        return self._element(eid)[0].degree

    def local_values(self, eid: int, xi, eta) -> tuple[NDArray, NDArray]:
        """Values (ncomp, npts) and physical gradients (ncomp, 2, npts) in element ``eid``."""
        asm, local = self._element(eid)
        xi = np.atleast_1d(np.asarray(xi, dtype=np.float64))
        eta = np.atleast_1d(np.asarray(eta, dtype=np.float64))
        J = self.mesh.jacobian(eid, xi, eta)
        V, G = physical_shapes(asm.kind, asm.is_quad, asm.order, asm.shapes, xi, eta, J)
        return np.tensordot(local, V, axes=1), np.tensordot(local, G, axes=1)

    def evaluate_local(self, eid: int, xi: float, eta: float):
        vals, _ = self.local_values(eid, xi, eta)
        return vals[0, 0].item() if self.ncomp == 1 else vals[:, 0]

    def evaluate(self, x: float, y: float):
        eid, xi, eta = self.mesh.locate(x, y)
        return self.evaluate_local(eid, xi, eta)

    def gradient(self, x: float, y: float) -> NDArray:
        eid, xi, eta = self.mesh.locate(x, y)
        _, grads = self.local_values(eid, xi, eta)
        return grads[:, :, 0].squeeze()

    def samples(self, eid: int, n: int | None = None) -> Samples:
        """Quadrature samples of the solution on one of its own active elements."""
        e = self.mesh.elements[eid]
        n = n or points_for_order(self.element_degree(eid))
        xi, eta, w = element_rule(e.is_quad, n)
        x, y = self.mesh.ref_to_phys(eid, xi, eta)
        det = np.abs(np.linalg.det(self.mesh.jacobian(eid, xi, eta)))
        vals, grads = self.local_values(eid, xi, eta)
        return Samples(xi, eta, x, y, w * det, vals, grads)

    def samples_under(self, eid: int, n_order: int = 0) -> Samples:
        """Samples over the active descendants of ``eid``, in ``eid``'s reference frame.

        Integration is exact for polynomial data since every leaf is integrated
        with its own rule.
        """
        parts = []
        for leaf in self.mesh.leaves(eid):
            n = points_for_order(max(n_order, self.element_degree(leaf)))
            s = self.samples(leaf, n)
            A, b = self.mesh.sub_transform(leaf, eid)
            s.xi, s.eta = A @ np.vstack((s.xi, s.eta)) + b[:, None]
            parts.append(s)
        return Samples.concat(parts)

    def norm(self, norm: Norm | None = None) -> float:
        norm = norm or H1Norm()
        total = 0.0
        for eid in self._local:
            s = self.samples(eid)
            total += norm.integrate(s.vals, s.grads, s.x, s.y, s.w)
        return float(np.sqrt(total))

    def __repr__(self) -> str:
        return f"Solution(ndof={self.coeffs.size}, elements={len(self._local)}, ncomp={self.ncomp})"


# ----------------------------------------------------------------------------
# Projections
# ----------------------------------------------------------------------------


def _components(v, ncomp: int, npts: int) -> NDArray:
    v = np.asarray(v)
    if not np.iscomplexobj(v):
        v = v.astype(np.float64)
    if v.ndim < 2:
        return np.broadcast_to(v, (ncomp, npts)).copy()
    return v.reshape(ncomp, npts)


def _same_element(a: Mesh, b: Mesh, eid: int) -> bool:
    if eid >= a.max_element_id or eid >= b.max_element_id:
        return False
    xa, xb = a.vertex_xy(eid), b.vertex_xy(eid)
    return xa.shape == xb.shape and np.allclose(xa, xb)


def sample_on(source: Solution, target: Mesh, eid: int, order: int) -> Samples:
    """Samples of ``source`` over target element ``eid``, in its reference frame."""
    src = source.mesh
    if _same_element(src, target, eid):
        return source.samples_under(eid, order)

    e = target.elements[eid]
    n = points_for_order(order) + 1
    xi, eta, w = element_rule(e.is_quad, n)
    x, y = target.ref_to_phys(eid, xi, eta)
    w = w * np.abs(np.linalg.det(target.jacobian(eid, xi, eta)))

    anc = e
    while anc.parent is not None and not _same_element(src, target, anc.id):
        anc = target.elements[anc.parent]
    if _same_element(src, target, anc.id) and src.elements[anc.id].active:
        axi, aeta = target.to_ancestor(eid, xi, eta, anc.id)
        vals, grads = source.local_values(anc.id, axi, aeta)
        return Samples(xi, eta, x, y, w, vals, grads)

    # unrelated meshes: locate every point
    dtype = source.coeffs.dtype
    vals = np.empty((source.ncomp, xi.size), dtype=dtype)
    grads = np.empty((source.ncomp, 2, xi.size), dtype=dtype)
    for k in range(xi.size):
        sid, sxi, seta = src.locate(x[k], y[k])
        v, g = source.local_values(sid, sxi, seta)
        vals[:, k], grads[:, :, k] = v[:, 0], g[:, :, 0]
    return Samples(xi, eta, x, y, w, vals, grads)


def _global_projection(space: Space, sample: Callable[[AsmList], Samples], norm: Norm) -> Solution:
    """Best approximation in ``space`` of data sampled element by element.

    Essential DOFs take the space's boundary values, the others solve the
    normal equations assembled over all active elements.
    """
    ndof, first = space.get_num_dofs(), space.first_dof
    fixed = space.get_essential_values()
    pin = not norm.has_mass and not fixed
    rows, cols, data, parts = [], [], [], []
    for e in space.mesh.active_elements():
        asm = space.assembly_list(e.id)
        s = sample(asm)
        J = space.mesh.jacobian(e.id, s.xi, s.eta)
        V, G = physical_shapes(space.kind, e.is_quad, asm.order, asm.shapes, s.xi, s.eta, J)
        F = norm.shape_terms(V, G, s.x, s.y)
        T = norm.terms(s.vals, s.grads, s.x, s.y)
        if pin:
            # seminorms leave constants undetermined
            one = np.ones_like(s.w)
            F += [V[:, c] for c in range(space.kind.ncomp)]
            T += [(s.vals[c], one) for c in range(space.kind.ncomp)]
        A, b = _normal_equations(F, T, s.w)
        idx = asm.dofs - first
        rows.append(np.repeat(idx, idx.size))
        cols.append(np.tile(idx, idx.size))
        data.append((asm.coef.T @ A @ asm.coef).ravel())
        parts.append((idx, asm.coef.T @ b))

    A = sp.coo_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))), shape=(ndof, ndof)
    ).tocsr()
    dtype = np.result_type(np.float64, *(b for _, b in parts), *fixed.values())
    rhs = np.zeros(ndof, dtype=dtype)
    for idx, b in parts:
        np.add.at(rhs, idx, b)

    u = np.zeros(ndof, dtype=dtype)
    ess = np.array(sorted(fixed), dtype=np.int64) - first
    u[ess] = [fixed[d] for d in sorted(fixed)]
    free = np.setdiff1d(np.arange(ndof), ess)
    if free.size:
        A_free = A[free]
        rhs_free = rhs[free] - A_free[:, ess] @ u[ess]
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", spla.MatrixRankWarning)
                x = np.atleast_1d(spla.spsolve(A_free[:, free].tocsc(), rhs_free))
        except (RuntimeError, spla.MatrixRankWarning) as exc:
            raise SingularSystemError(f"Projection matrix is singular: {exc}") from exc
        if not np.all(np.isfinite(x)):
            raise SingularSystemError("Projection produced non-finite coefficients")
        u[free] = x
    log.debug(f"Projected onto {ndof} DOFs ({len(fixed)} essential)")
    return Solution(space, u)


def project(solution: Solution, space: Space, norm: Norm | None = None) -> Solution:
    """Best approximation of ``solution`` in ``space``."""
    norm = norm or H1Norm()
    if solution.ncomp != space.kind.ncomp:
        raise ConfigurationError(
            f"Cannot project a {solution.ncomp}-component solution onto a {space.kind.name} space"
        )
    mesh = space.mesh
    return _global_projection(
        space, lambda asm: sample_on(solution, mesh, asm.eid, asm.degree), norm
    )


def project_function(
    space: Space,
    func: Callable,
    grad: Callable | None = None,
    norm: Norm | None = None,
    extra_points: int = 3,
) -> Solution:
    """Best approximation in ``space`` of a function given as func(x, y).

    ``grad(x, y)`` returns (du/dx, du/dy) per component. Without it only the
    L2 part of ``norm`` can be honored, so an L2 projection is used.
    """
    norm = norm or H1Norm()
    if grad is None and norm.uses_gradients:
        norm = L2Norm()
    mesh = space.mesh
    ncomp = space.kind.ncomp

    def sample(asm: AsmList) -> Samples:
        xi, eta, w = element_rule(asm.is_quad, points_for_order(asm.degree) + extra_points)
        x, y = mesh.ref_to_phys(asm.eid, xi, eta)
        det = np.abs(np.linalg.det(mesh.jacobian(asm.eid, xi, eta)))
        vals = _components(func(x, y), ncomp, xi.size)
        if grad is not None:
            grads = _components(grad(x, y), ncomp * 2, xi.size).reshape(ncomp, 2, xi.size)
        else:
            grads = np.zeros((ncomp, 2, xi.size))
        return Samples(xi, eta, x, y, w * det, vals, grads)

    return _global_projection(space, sample, norm)


def exact_error(
    solution: Solution,
    func: Callable,
    grad: Callable,
    norm: Norm | None = None,
    relative: bool = True,
    extra_points: int = 3,
) -> float:
    """Error of ``solution`` against an exact function, relative by default."""
    norm = norm or H1Norm()
    err = total = 0.0
    ncomp = solution.ncomp
    for eid in solution.orders:
        if not solution.mesh.elements[eid].active:
            raise MeshError(f"Element {eid} is no longer active in the solution's mesh")
        s = solution.samples(eid, points_for_order(solution.element_degree(eid)) + extra_points)
        vals = _components(func(s.x, s.y), ncomp, s.x.size)
        grads = _components(grad(s.x, s.y), ncomp * 2, s.x.size).reshape(ncomp, 2, s.x.size)
        err += norm.integrate(vals - s.vals, grads - s.grads, s.x, s.y, s.w)
        total += norm.integrate(vals, grads, s.x, s.y, s.w)
    if relative and total > 0:
        return float(np.sqrt(err / total))
    return float(np.sqrt(err))
