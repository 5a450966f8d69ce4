"""Projection-based hp candidate selection.

For a marked element every admissible candidate (p-increase, h-split with
son orders, or both) is scored by

    score = (log10 e0 - log10 ec) / (dc - d0) ** conv_exp

where e0, d0 are the projection error and local DOF count of the current
element and ec, dc those of the candidate. The reference solution is
projected onto each son's prospective basis; errors are cached per
(son, order) so shared sons are only projected once.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass

import numpy as np

from .datastructures import AdaptParameters, CandList, RefinementMode
from .mesh import QUAD_REF, TRI_REF, _son_transform, inside_reference
from .norms import Norm
from .shapeset import element_shapes, physical_shapes, polynomial_degree
from .solution import Samples, Solution, best_approximation, sample_on
from .space import Space, SpaceKind

log = logging.getLogger(__name__)

_Q = QUAD_REF.tolist()
SON_CORNERS = {
    (True, RefinementMode.ISO): [
        [_Q[0], [0.0, -1.0], [0.0, 0.0], [-1.0, 0.0]],
        [[0.0, -1.0], _Q[1], [1.0, 0.0], [0.0, 0.0]],
        [[0.0, 0.0], [1.0, 0.0], _Q[2], [0.0, 1.0]],
        [[-1.0, 0.0], [0.0, 0.0], [0.0, 1.0], _Q[3]],
    ],
    (True, RefinementMode.ANISO_H): [
        [_Q[0], _Q[1], [1.0, 0.0], [-1.0, 0.0]],
        [[-1.0, 0.0], [1.0, 0.0], _Q[2], _Q[3]],
    ],
    (True, RefinementMode.ANISO_V): [
        [_Q[0], [0.0, -1.0], [0.0, 1.0], _Q[3]],
        [[0.0, -1.0], _Q[1], _Q[2], [0.0, 1.0]],
    ],
    (False, RefinementMode.ISO): [
        [[0.5, 0.5], TRI_REF[0].tolist(), TRI_REF[1].tolist()],
        [[0.5, 0.5], TRI_REF[2].tolist(), TRI_REF[0].tolist()],
    ],
}

# above this many son-order combinations all sons share one order
MAX_COMBINATIONS = 64


@dataclass(frozen=True)
class Candidate:
    """A local modification: ``split`` None keeps the element, ``orders`` one per son."""

    split: RefinementMode | None
    orders: tuple

    @property
    def is_h(self) -> bool:
        return self.split is not None

    def __str__(self) -> str:
        kind = "p" if self.split is None else self.split.name.lower()
        return f"{kind}{list(self.orders)}"


@dataclass
class ScoredCandidate:
    candidate: Candidate
    error: float
    dofs: int
    score: float


def patch_dofs(kind: SpaceKind, is_quad: bool, sons: list[tuple[list, object]]) -> int:
    """DOF count of a patch of sons given by reference corners and orders.

    Vertices and edges are keyed by integer coordinates so shared entities
    between sons are counted once.
    """
    verts: set[tuple[int, int]] = set()
    edge_orders: dict[tuple, int] = {}
    bubbles = 0
    for corners, order in sons:
        keys = [(int(round(2 * c[0])), int(round(2 * c[1]))) for c in corners]
        verts.update(keys)
        n = len(keys)
        for i in range(n):
            key = tuple(sorted((keys[i], keys[(i + 1) % n])))
            o = (order[0] if i in (0, 2) else order[1]) if is_quad else order
            edge_orders[key] = max(edge_orders.get(key, 0), o)
        bubbles += kind.bubble_count(is_quad, order)
    nv = len(verts) if kind.vertex_functions else 0
    return nv + sum(kind.edge_count(o) for o in edge_orders.values()) + bubbles


class Selector:
    """Enumerates and scores refinement candidates for single elements."""

    def __init__(self, params: AdaptParameters, norm: Norm, kind: SpaceKind) -> None:
        self.params = params
        self.norm = norm
        self.kind = kind
        self.cand_list = params.cand_list

    # ------------------------------------------------------------------
    # Candidate generation
    # ------------------------------------------------------------------

    def _cap(self, o: int) -> int:
        return max(self.kind.min_order, min(o, self.params.max_order))

    def _order(self, is_quad: bool, px: int, py: int):
        return (self._cap(px), self._cap(py)) if is_quad else self._cap(px)

    def _half(self, p: int) -> int:
        return max(self.kind.min_order, (p + 1) // 2)

    def p_candidates(self, is_quad: bool, order) -> list[Candidate]:
        px, py = order if is_quad else (order, order)
        steps = [(1, 1), (2, 2)]
        if is_quad and self.cand_list.allows_p_aniso:
            steps = [(i, j) for i in range(3) for j in range(3) if (i, j) != (0, 0)]
        out = []
        for i, j in steps:
            o = self._order(is_quad, px + i, py + j)
            if o != order:
                out.append(Candidate(None, (o,)))
        return list(dict.fromkeys(out))

    def son_orders(self, is_quad: bool, order, split: RefinementMode) -> list:
        px, py = order if is_quad else (order, order)
        if self.cand_list.is_h_only:
            return [order]
        split_x = split in (RefinementMode.ISO, RefinementMode.ANISO_V)
        split_y = split in (RefinementMode.ISO, RefinementMode.ANISO_H) or not is_quad
        qx0 = self._half(px) if split_x else px
        qy0 = self._half(py) if split_y else py
        if not is_quad:
            return [self._cap(q) for q in (qx0, qx0 + 1)]
        if self.cand_list.allows_p_aniso:
            return [self._order(True, qx, qy) for qx in (qx0, qx0 + 1) for qy in (qy0, qy0 + 1)]
        q0 = max(qx0, qy0)
        return [self._order(True, q, q) for q in (q0, q0 + 1)]

    def h_candidates(self, is_quad: bool, order) -> list[Candidate]:
        splits = [RefinementMode.ISO]
        if is_quad and self.cand_list.allows_h_aniso:
            splits += [RefinementMode.ANISO_H, RefinementMode.ANISO_V]
        out = []
        for split in splits:
            nsons = len(SON_CORNERS[(is_quad, split)])
            options = list(dict.fromkeys(self.son_orders(is_quad, order, split)))
            if len(options) ** nsons <= MAX_COMBINATIONS:
                combos = itertools.product(options, repeat=nsons)
            else:
                combos = ((o,) * nsons for o in options)
            out.extend(Candidate(split, tuple(c)) for c in combos)
        return out

    def candidates(self, is_quad: bool, order) -> list[Candidate]:
        """Admissible candidates in a fixed order: p-only first, then h by split."""
        out = []
        if not self.cand_list.is_h_only:
            out += self.p_candidates(is_quad, order)
        if not self.cand_list.is_p_only:
            out += self.h_candidates(is_quad, order)
        return out

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def default(self, is_quad: bool, order) -> Candidate:
        """Isotropic h-refinement keeping the current order."""
        nsons = len(SON_CORNERS[(is_quad, RefinementMode.ISO)])
        return Candidate(RefinementMode.ISO, (order,) * nsons)

    @staticmethod
    def _local(is_quad: bool, corners, samples: Samples):
        A, b = _son_transform(np.array(corners), is_quad)
        local = np.linalg.solve(A, np.vstack((samples.xi, samples.eta)) - b[:, None])
        return A, local, inside_reference(is_quad, local[0], local[1], 1e-12)

    def _split_errors(self, samples: Samples, J, is_quad: bool, sons: list):
        """Return error(son index, order) for one split, memoized.

        Points on an interface between sons are shared out between them.
        """
        geo = [self._local(is_quad, c, samples) for c in sons]
        share = np.maximum(sum(inside.astype(np.float64) for _, _, inside in geo), 1.0)
        cache: dict = {}

        def error(k: int, order) -> float:
            if (k, order) not in cache:
                A, local, inside = geo[k]
                sub = Samples(local[0][inside], local[1][inside], samples.x[inside],
                              samples.y[inside], samples.w[inside] / share[inside],
                              samples.vals[:, inside], samples.grads[:, :, inside])
                shapes = element_shapes(self.kind, is_quad, order)
                V, G = physical_shapes(self.kind, is_quad, order, shapes, sub.xi, sub.eta,
                                       J[inside] @ A)
                cache[(k, order)] = best_approximation(V, G, sub, self.norm)[1]
            return cache[(k, order)]

        return error

    def score(self, space: Space, eid: int, ref: Solution) -> list[ScoredCandidate]:
        """Score every candidate of an element; the current state comes first with score 0."""
        mesh = space.mesh
        e = mesh.get_element(eid)
        order = space.get_element_order(eid)
        cands = self.candidates(e.is_quad, order)
        orders = [order] + [o for c in cands for o in c.orders]
        top = max(polynomial_degree(self.kind, o, []) for o in orders)
        samples = sample_on(ref, mesh, eid, top)
        J = mesh.jacobian(eid, samples.xi, samples.eta)
        whole = [(QUAD_REF if e.is_quad else TRI_REF).tolist()]

        errors = {None: self._split_errors(samples, J, e.is_quad, whole)}
        e0 = errors[None](0, order)
        d0 = patch_dofs(self.kind, e.is_quad, [(whole[0], order)])
        scored = [ScoredCandidate(Candidate(None, (order,)), float(np.sqrt(e0)), d0, 0.0)]
        for cand in cands:
            sons = whole if cand.split is None else SON_CORNERS[(e.is_quad, cand.split)]
            if cand.split not in errors:
                errors[cand.split] = self._split_errors(samples, J, e.is_quad, sons)
            err = sum(errors[cand.split](k, o) for k, o in enumerate(cand.orders))
            dofs = patch_dofs(self.kind, e.is_quad, list(zip(sons, cand.orders)))
            s = -np.inf
            if dofs > d0 and err < e0:
                gain = np.inf if err <= 0.0 else 0.5 * (np.log10(e0) - np.log10(err))
                s = gain / (dofs - d0) ** self.params.conv_exp
            scored.append(ScoredCandidate(cand, float(np.sqrt(err)), dofs, float(s)))
        return scored

    def select(self, space: Space, eid: int, ref: Solution) -> Candidate:
        """Best-scoring candidate; ties keep the first in generation order."""
        e = space.mesh.get_element(eid)
        order = space.get_element_order(eid)
        if self.cand_list == CandList.H_ISO:
            return self.default(e.is_quad, order)

        best = None
        for sc in self.score(space, eid, ref)[1:]:
            if sc.score > -np.inf and (best is None or sc.score > best.score):
                best = sc
        if best is None:
            log.warning(
                f"No admissible candidate improves element {eid} (order {order}); "
                f"falling back to isotropic h-refinement"
            )
            return self.default(e.is_quad, order)
        log.debug(f"Element {eid}: {best.candidate} (err {best.error:.3e}, dofs {best.dofs})")
        return best.candidate
