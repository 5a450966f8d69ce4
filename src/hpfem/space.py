"""Function spaces and degree-of-freedom enumeration.

DOFs are enumerated in three passes over the active elements: vertex
functions, edge functions, bubble functions. Hanging vertices and
constrained sub-edges receive no DOFs of their own; their shape functions
are combinations of the constraining edge's functions, so the global
field stays conforming across irregular edges.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Union

import numpy as np
from numpy.typing import NDArray

from .datastructures import MAX_ELEMENT_ORDER
from .errors import ConfigurationError
from .mesh import Element, Mesh, edge_key
from .quadrature import gauss_1d, legendre_with_derivative, lobatto, local_dimension
from .shapeset import edge_order, polynomial_degree

log = logging.getLogger(__name__)

BC_ESSENTIAL = "essential"
BC_NATURAL = "natural"

Order = Union[int, tuple[int, int]]


def _h1_bubbles(is_quad: bool, order) -> int:
    if is_quad:
        px, py = order
        return max(px - 1, 0) * max(py - 1, 0)
    return max(order - 1, 0) * max(order - 2, 0) // 2


def _hcurl_bubbles(is_quad: bool, order) -> int:
    if is_quad:
        px, py = order
        return (px + 1) * py + px * (py + 1)
    return (order + 1) * order


def _l2_bubbles(is_quad: bool, order) -> int:
    return local_dimension(is_quad, order)


@dataclass(frozen=True)
class SpaceKind:
    """Per-entity function counts of a space type.

    continuity: "full" (H1), "tangential" (H(curl)) or "none" (L2).
    Edge functions are numbered from ``first_edge_function``.
    """

    name: str
    vertex_functions: bool
    continuity: str
    edge_count: Callable[[int], int]
    bubble_count: Callable[[bool, Order], int]
    min_order: int
    ncomp: int = 1
    first_edge_function: int = 0


H1 = SpaceKind("h1", True, "full", lambda p: max(p - 1, 0), _h1_bubbles, 1, 1, 2)
HCURL = SpaceKind("hcurl", False, "tangential", lambda p: p + 1, _hcurl_bubbles, 0, 2, 0)
L2 = SpaceKind("l2", False, "none", lambda p: 0, _l2_bubbles, 0, 1, 0)


@dataclass
class AsmList:
    """Shape functions of an active element and the global DOFs they are built from.

    Local coefficients are ``coef @ u[dofs - first_dof]``. Rows of ``coef``
    are unit vectors for shapes with their own DOF; hanging vertices and
    constrained sub-edges carry the weights of the constraining edge.
    """

    eid: int
    kind: SpaceKind
    is_quad: bool
    order: Order
    shapes: list[tuple]
    dofs: NDArray[np.int64]
    coef: NDArray[np.float64]

    @property
    def degree(self) -> int:
        return polynomial_degree(self.kind, self.order, self.shapes)


class _DofBuilder:
    """Running DOF counter threaded through one enumeration pass."""

    def __init__(self, first: int) -> None:
        self.first = first
        self.next = first
        self.entities: list[tuple] = []

    def take(self, n: int, entity: tuple) -> range:
        r = range(self.next, self.next + n)
        self.entities.extend(entity + (k,) for k in range(n))
        self.next += n
        return r


class Space:
    """Polynomial-order assignment over a mesh and its DOF enumeration."""

    def __init__(
        self,
        mesh: Mesh,
        kind: SpaceKind = H1,
        bc_types: Callable[[int], str] | None = None,
        essential_bc_values: Callable[[int, float, float], float] | None = None,
        order: int | None = None,
    ) -> None:
        self.mesh = mesh
        self.kind = kind
        self.bc_types = bc_types or (lambda marker: BC_NATURAL)
        self.essential_bc_values = essential_bc_values or (lambda marker, x, y: 0.0)
        self._orders: dict[int, Order] = {}
        self._orders_version = 0
        self._enumerated: tuple[int, int] | None = None
        self.first_dof = 0
        self.ndof = 0
        self.vertex_dofs: dict[int, int] = {}
        self.edge_dofs: dict[tuple[int, int], range] = {}
        self.bubble_dofs: dict[int, range] = {}
        self.essential_dofs: set[int] = set()
        self._entities: list[tuple] = []
        self._constrained: dict[tuple[int, int], tuple[int, int]] = {}
        self._edge_orders: dict[tuple[int, int], int] = {}
        self._hanging: dict[int, tuple[tuple[int, int], float]] = {}
        self._asm: dict[int, AsmList] = {}
        if order is not None:
            self.set_uniform_order(order)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _normalize(self, e: Element, order) -> Order:
        if e.is_quad:
            px, py = (order, order) if np.isscalar(order) else tuple(order)
            px, py = int(px), int(py)
            if not (self.kind.min_order <= min(px, py) and max(px, py) <= MAX_ELEMENT_ORDER):
                raise ConfigurationError(f"Invalid order ({px}, {py}) for element {e.id}")
            return (px, py)
        if not np.isscalar(order):
            px, py = order
            if px != py:
                raise ConfigurationError(f"Triangle {e.id} cannot take anisotropic order {order}")
            order = px
        order = int(order)
        if not self.kind.min_order <= order <= MAX_ELEMENT_ORDER:
            raise ConfigurationError(f"Invalid order {order} for element {e.id}")
        return order

    def set_uniform_order(self, p: int) -> None:
        for e in self.mesh.active_elements():
            self._orders[e.id] = self._normalize(e, p)
        self._orders_version += 1

    def set_element_order(self, eid: int, order: Order) -> None:
        e = self.mesh.get_element(eid)
        if not e.active:
            raise ConfigurationError(f"Cannot set the order of inactive element {eid}")
        self._orders[eid] = self._normalize(e, order)
        self._orders_version += 1

    def get_element_order(self, eid: int) -> Order:
        """Order of an element; sons created after the last assignment inherit it."""
        e = self.mesh.get_element(eid)
        while True:
            if e.id in self._orders:
                return self._orders[e.id]
            if e.parent is None:
                raise ConfigurationError(f"Element {eid} has no polynomial order")
            e = self.mesh.elements[e.parent]

    def copy_orders(self, src: Space, inc: int = 0) -> None:
        """Take orders from a space over an ancestor mesh (same element ids), plus ``inc``."""
        for e in self.mesh.active_elements():
            anc = e
            while not (anc.id < src.mesh.max_element_id and src.mesh.elements[anc.id].active):
                if anc.parent is None:
                    raise ConfigurationError(
                        f"Element {e.id} has no counterpart in the source space's mesh"
                    )
                anc = self.mesh.elements[anc.parent]
            order = src.get_element_order(anc.id)
            if e.is_quad:
                order = tuple(min(o + inc, MAX_ELEMENT_ORDER) for o in order)
            else:
                order = min(order + inc, MAX_ELEMENT_ORDER)
            self._orders[e.id] = self._normalize(e, order)
        self._orders_version += 1

    def dup(self, mesh: Mesh) -> Space:
        """Empty space of the same kind and boundary conditions over another mesh."""
        return Space(mesh, self.kind, self.bc_types, self.essential_bc_values)

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def _edge_order(self, key, users, orders, edges) -> int:
        own = [edge_order(self.mesh.elements[eid].is_quad, orders[eid], i) for eid, i in users]
        subs = self.mesh.sub_edges(*key)[1]
        if not subs:
            return max(own)
        touching = list(own)
        for sub in subs:
            for eid, i in edges.get(sub, ()):
                touching.append(edge_order(self.mesh.elements[eid].is_quad, orders[eid], i))
        return min(touching)

    def assign_dofs(self, first_dof: int = 0) -> int:
        """Enumerate DOFs from scratch starting at ``first_dof``; returns their count."""
        mesh = self.mesh
        edges, hanging, constrained = mesh.constraints()
        active = list(mesh.active_elements())
        orders = {e.id: self.get_element_order(e.id) for e in active}

        builder = _DofBuilder(first_dof)
        self.vertex_dofs, self.edge_dofs, self.bubble_dofs = {}, {}, {}
        self.essential_dofs = set()

        if self.kind.vertex_functions:
            for e in active:
                for v in e.vn:
                    if v in hanging or v in self.vertex_dofs:
                        continue
                    self.vertex_dofs[v] = builder.take(1, ("vertex", v))[0]

        self._edge_orders = {}
        for key, users in edges.items():
            if key in constrained:
                continue
            order = self._edge_order(key, users, orders, edges)
            self._edge_orders[key] = order
            n = self.kind.edge_count(order)
            if n > 0:
                self.edge_dofs[key] = builder.take(n, ("edge", key))

        for e in active:
            n = self.kind.bubble_count(e.is_quad, orders[e.id])
            if n > 0:
                self.bubble_dofs[e.id] = builder.take(n, ("bubble", e.id))

        for key in edges:
            node = mesh.edge_node(*key)
            if node is None or not node.boundary:
                continue
            if self.bc_types(node.marker) != BC_ESSENTIAL:
                continue
            self.essential_dofs.update(self.edge_dofs.get(key, ()))
            for v in key:
                if v in self.vertex_dofs:
                    self.essential_dofs.add(self.vertex_dofs[v])

        self.first_dof = first_dof
        self.ndof = builder.next - first_dof
        self._entities = builder.entities
        self._constrained = constrained
        self._hanging = {
            m: (key, self._edge_param(key, m))
            for key in edges if key not in constrained
            for m in mesh.sub_edges(*key)[0]
        }
        self._asm = {}
        self._enumerated = (mesh.version, self._orders_version)
        log.debug(f"Assigned {self.ndof} DOFs ({len(self.essential_dofs)} essential)")
        return self.ndof

    @property
    def is_stale(self) -> bool:
        return self._enumerated != (self.mesh.version, self._orders_version)

    @property
    def enumeration(self) -> tuple[int, int] | None:
        """(mesh version, order version) of the last enumeration."""
        return self._enumerated

    def _check_enumerated(self) -> None:
        if self._enumerated is None:
            raise ConfigurationError("DOFs requested before assign_dofs()")
        if self.is_stale:
            raise ConfigurationError("Mesh or orders changed since the last assign_dofs()")

    def get_num_dofs(self) -> int:
        self._check_enumerated()
        return self.ndof

    def get_num_free_dofs(self) -> int:
        self._check_enumerated()
        return self.ndof - len(self.essential_dofs)

    def dof_entity(self, dof: int) -> tuple:
        """(kind, entity, local index) owning a global DOF."""
        self._check_enumerated()
        return self._entities[dof - self.first_dof]

    def _edge_param(self, key: tuple[int, int], v: int) -> float:
        """Parameter in [-1, 1] of vertex ``v`` along edge ``key``, -1 at ``key[0]``."""
        a, b, p = (self.mesh.nodes[i] for i in (*key, v))
        dx, dy = b.x - a.x, b.y - a.y
        return 2.0 * ((p.x - a.x) * dx + (p.y - a.y) * dy) / (dx * dx + dy * dy) - 1.0

    def _vertex_weights(self, v: int) -> dict[int, float]:
        if v in self.vertex_dofs:
            return {self.vertex_dofs[v]: 1.0}
        key, t = self._hanging[v]
        return self._trace_weights(key, t)

    def _trace_weights(self, key: tuple[int, int], t: float) -> dict[int, float]:
        """DOF weights of the H1 trace on an unconstrained edge at parameter ``t``."""
        dofs = self.edge_dofs.get(key, range(0))
        L, _ = lobatto(len(dofs) + 1, t)
        out: dict[int, float] = defaultdict(float)
        for v, lv in zip(key, L[:2, 0]):
            for dof, c in self._vertex_weights(v).items():
                out[dof] += lv * c
        for k, dof in enumerate(dofs, start=2):
            out[dof] += L[k, 0]
        return out

    def _sub_edge_weights(self, key: tuple[int, int], owner: tuple[int, int]):
        """Edge functions of a constrained sub-edge as combinations of the owner's DOFs.

        The owner's trace restricted to the sub-edge is expanded in the
        sub-edge's own edge functions: by H1-seminorm moments of Lobatto
        functions, or by Legendre moments of the tangential trace.
        """
        dofs = self.edge_dofs.get(owner, range(0))
        if not dofs:
            return []
        first = self.kind.first_edge_function
        p = first + len(dofs) - 1
        ta, tb = (self._edge_param(owner, v) for v in key)
        s, w = gauss_1d(p + 2)
        t = ta + 0.5 * (s + 1.0) * (tb - ta)
        dt = 0.5 * (tb - ta)
        if self.kind.vertex_functions:
            _, dLs = lobatto(p, s)
            _, dLt = lobatto(p, t)
            W = (dLs[first:] * w) @ (dLt[first:] * dt).T
        else:
            Ps, _ = legendre_with_derivative(p, s)
            Pt, _ = legendre_with_derivative(p, t)
            scale = 0.5 * (2 * np.arange(p + 1) + 1)
            W = scale[:, None] * ((Ps * w) @ (Pt * dt).T)
        return [
            (k, {dof: W[k - first, j] for j, dof in enumerate(dofs)})
            for k in range(first, p + 1)
        ]

    def assembly_list(self, eid: int) -> AsmList:
        """Shape functions of an active element with their global DOFs and weights."""
        self._check_enumerated()
        e = self.mesh.get_element(eid)
        if not e.active:
            raise ConfigurationError(f"DOFs requested on inactive element {eid}")
        if eid in self._asm:
            return self._asm[eid]

        shapes: list[tuple] = []
        rows: list[dict[int, float]] = []
        if self.kind.vertex_functions:
            for i, v in enumerate(e.vn):
                shapes.append(("vertex", i))
                rows.append(self._vertex_weights(v))
        if self.kind.continuity != "none":
            for i, (a, b) in enumerate(e.edges()):
                key, sign = edge_key(a, b), 1 if a < b else -1
                owner = self._constrained.get(key)
                if owner is None:
                    own = enumerate(self.edge_dofs.get(key, ()), start=self.kind.first_edge_function)
                    weights = [(k, {dof: 1.0}) for k, dof in own]
                else:
                    weights = self._sub_edge_weights(key, owner)
                for k, row in weights:
                    shapes.append(("edge", i, k, sign))
                    rows.append(row)
        for j, dof in enumerate(self.bubble_dofs.get(eid, ())):
            shapes.append(("bubble", j))
            rows.append({dof: 1.0})

        dofs = sorted(set().union(*rows))
        index = {dof: n for n, dof in enumerate(dofs)}
        coef = np.zeros((len(shapes), len(dofs)))
        for r, row in enumerate(rows):
            for dof, c in row.items():
                coef[r, index[dof]] += c
        asm = AsmList(eid, self.kind, e.is_quad, self.get_element_order(eid), shapes,
                      np.array(dofs, dtype=np.int64), coef)
        self._asm[eid] = asm
        return asm

    def element_dofs(self, eid: int) -> list[int]:
        """Global DOFs whose basis functions are supported on an active element."""
        return self.assembly_list(eid).dofs.tolist()

    def get_essential_values(self) -> dict[int, float | complex]:
        """Prescribed values of the essential DOFs from the boundary-value callback.

        H1 traces are interpolated at the vertices and projected onto the
        Lobatto edge functions. For H(curl) the callback gives the tangential
        component along the counter-clockwise boundary tangent; it is
        projected onto the Legendre moments of the edge's tangential trace.
        """
        self._check_enumerated()
        values: dict[int, float | complex] = {}
        x, w = gauss_1d(MAX_ELEMENT_ORDER + 2)
        for key, users in self.mesh.active_edge_map().items():
            node = self.mesh.edge_node(*key)
            if node is None or not node.boundary or self.bc_types(node.marker) != BC_ESSENTIAL:
                continue
            a, b = (self.mesh.nodes[v] for v in key)
            if self.kind.vertex_functions:
                for v in (a, b):
                    if v.id in self.vertex_dofs:
                        values[self.vertex_dofs[v.id]] = np.asarray(
                            self.essential_bc_values(node.marker, v.x, v.y)
                        ).item()
            dofs = self.edge_dofs.get(key, range(0))
            if len(dofs) == 0:
                continue
            xs = 0.5 * (1 - x) * a.x + 0.5 * (1 + x) * b.x
            ys = 0.5 * (1 - x) * a.y + 0.5 * (1 + x) * b.y
            g = np.array([self.essential_bc_values(node.marker, px, py) for px, py in zip(xs, ys)])
            if self.kind.vertex_functions:
                ga = self.essential_bc_values(node.marker, a.x, a.y)
                gb = self.essential_bc_values(node.marker, b.x, b.y)
                g = g - (0.5 * (1 - x) * ga + 0.5 * (1 + x) * gb)
                B = lobatto(len(dofs) + 1, x)[0][2:]
            else:
                eid, i = users[0]
                sign = 1.0 if self.mesh.elements[eid].edge(i)[0] == key[0] else -1.0
                g = sign * 0.5 * np.hypot(b.x - a.x, b.y - a.y) * g
                B = legendre_with_derivative(len(dofs) - 1, x)[0]
            G = (B * w) @ B.T
            coeffs = np.linalg.solve(G, (B * w) @ g)
            values.update(zip(dofs, coeffs.tolist()))
        return values


def assign_dofs(*spaces: Space) -> int:
    """Enumerate several spaces into one global numbering; returns the total."""
    ndof = 0
    for space in spaces:
        ndof += space.assign_dofs(ndof)
    return ndof
