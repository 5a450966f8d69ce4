"""Hierarchical 2D mesh of triangles and quadrilaterals.

Elements and nodes live in arenas addressed by integer ids. Refined
elements stay in the arena (inactive) so ids remain stable across
refinements and copies. Midpoint vertices are hash-consed by the pair of
vertices they split, which is how hanging nodes are detected.
"""

from __future__ import annotations

import copy as _copy
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

import numpy as np
from numpy.typing import NDArray

from .datastructures import ARBITRARY_REGULARITY, RefinementMode
from .errors import MeshError, RegularityError

if TYPE_CHECKING:
    import meshio

log = logging.getLogger(__name__)

# Boundary markers of the structured rectangle (0 means interior)
BOTTOM, RIGHT, TOP, LEFT = 1, 2, 3, 4

# Tolerance for point location in reference coordinates
LOCATE_TOL = 1e-10

# Reference coordinates of the element vertices
QUAD_REF = np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]])
TRI_REF = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])


def edge_key(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a < b else (b, a)


@dataclass
class Node:
    """Vertex node (coordinates) or edge node (endpoints p1, p2)."""

    id: int
    kind: str
    x: float = 0.0
    y: float = 0.0
    p1: int = -1
    p2: int = -1
    marker: int = 0
    boundary: bool = False


@dataclass
class Element:
    """Triangle (3 vertices) or quad (4 vertices), counter-clockwise.

    ``trf`` maps the element's reference coordinates into its parent's
    reference coordinates: ``xi_parent = A @ xi + b``.
    """

    id: int
    vn: tuple[int, ...]
    marker: int = 0
    active: bool = True
    parent: int | None = None
    sons: tuple[int, ...] = ()
    split: RefinementMode | None = None
    curved: bool = False
    level: int = 0
    trf: tuple[NDArray[np.float64], NDArray[np.float64]] | None = None

    @property
    def is_quad(self) -> bool:
        return len(self.vn) == 4

    @property
    def is_triangle(self) -> bool:
        return len(self.vn) == 3

    @property
    def nvert(self) -> int:
        return len(self.vn)

    def edge(self, i: int) -> tuple[int, int]:
        return self.vn[i], self.vn[(i + 1) % self.nvert]

    def edges(self) -> Iterator[tuple[int, int]]:
        for i in range(self.nvert):
            yield self.edge(i)


def _son_transform(corners: NDArray[np.float64], is_quad: bool):
    """Affine map from a son's reference element onto its corners in parent coordinates."""
    c = np.asarray(corners, dtype=np.float64)
    if is_quad:
        A = np.column_stack(((c[1] - c[0]) / 2.0, (c[3] - c[0]) / 2.0))
        b = (c[0] + c[2]) / 2.0
    else:
        A = np.column_stack((c[1] - c[0], c[2] - c[0]))
        b = c[0].copy()
    return A, b


def inside_reference(is_quad: bool, xi, eta, tol: float = LOCATE_TOL):
    if is_quad:
        return (np.abs(xi) <= 1.0 + tol) & (np.abs(eta) <= 1.0 + tol)
    return (xi >= -tol) & (eta >= -tol) & (xi + eta <= 1.0 + tol)


class Mesh:
    """Arena of nodes and elements with a refinement tree."""

    def __init__(self) -> None:
        self.nodes: list[Node] = []
        self.elements: list[Element] = []
        self._vertex_mid: dict[tuple[int, int], int] = {}
        self._edge_nodes: dict[tuple[int, int], int] = {}
        self.nbase = 0
        # Bumped on every topology change; spaces compare against it
        self.version = 0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_vertex(self, x: float, y: float) -> int:
        node = Node(id=len(self.nodes), kind="vertex", x=float(x), y=float(y))
        self.nodes.append(node)
        return node.id

    def _get_edge_node(self, a: int, b: int) -> int:
        key = edge_key(a, b)
        nid = self._edge_nodes.get(key)
        if nid is None:
            nid = len(self.nodes)
            self.nodes.append(Node(id=nid, kind="edge", p1=key[0], p2=key[1]))
            self._edge_nodes[key] = nid
        return nid

    def edge_node(self, a: int, b: int) -> Node | None:
        nid = self._edge_nodes.get(edge_key(a, b))
        return None if nid is None else self.nodes[nid]

    def _add_element(self, vn, marker=0, curved=False, parent=None, level=0, trf=None) -> int:
        vn = tuple(int(v) for v in vn)
        if len(vn) not in (3, 4):
            raise MeshError(f"Elements need 3 or 4 vertices, got {len(vn)}")
        elem = Element(
            id=len(self.elements), vn=vn, marker=marker, parent=parent,
            curved=curved, level=level, trf=trf,
        )
        self.elements.append(elem)
        for a, b in elem.edges():
            self._get_edge_node(a, b)
        return elem.id

    @classmethod
    def from_arrays(
        cls,
        vertices: NDArray[np.float64],
        cells: Iterable[Iterable[int]],
        boundary_markers: dict[tuple[int, int], int] | None = None,
        element_markers: Iterable[int] | None = None,
        curved: Iterable[bool] | None = None,
        default_marker: int = 1,
    ) -> Mesh:
        """Create a base mesh.

        Edges used by a single element are boundary edges; their marker is
        taken from ``boundary_markers`` (keyed by vertex pair) or defaults
        to ``default_marker``.
        """
        mesh = cls()
        vertices = np.asarray(vertices, dtype=np.float64)
        for x, y in vertices[:, :2]:
            mesh.add_vertex(x, y)
        cells = [tuple(c) for c in cells]
        markers = list(element_markers) if element_markers is not None else [0] * len(cells)
        curved_flags = list(curved) if curved is not None else [False] * len(cells)
        for vn, m, cv in zip(cells, markers, curved_flags):
            vn = mesh._counter_clockwise(vn)
            mesh._add_element(vn, marker=int(m), curved=bool(cv))
        mesh.nbase = len(mesh.elements)

        usage: dict[tuple[int, int], int] = {}
        for e in mesh.elements:
            for a, b in e.edges():
                usage[edge_key(a, b)] = usage.get(edge_key(a, b), 0) + 1
        given = {edge_key(*k): v for k, v in (boundary_markers or {}).items()}
        for key, count in usage.items():
            if count == 1:
                node = mesh.nodes[mesh._edge_nodes[key]]
                node.boundary = True
                node.marker = int(given.get(key, default_marker))
        return mesh

    def _counter_clockwise(self, vn: tuple[int, ...]) -> tuple[int, ...]:
        xy = np.array([[self.nodes[v].x, self.nodes[v].y] for v in vn])
        area = 0.5 * np.sum(xy[:, 0] * np.roll(xy[:, 1], -1) - np.roll(xy[:, 0], -1) * xy[:, 1])
        if area == 0.0:
            raise MeshError(f"Degenerate element with vertices {vn}")
        return vn if area > 0 else tuple(reversed(vn))

    @classmethod
    def from_meshio(cls, mesh: meshio.Mesh | str | Path, default_marker: int = 1) -> Mesh:
        """
        Create a Mesh from a meshio mesh or mesh file.

        Parameters
        ----------
        mesh : meshio.Mesh or str or Path
            Either a meshio Mesh object or path to a mesh file.
        default_marker : int
            Marker for boundary edges without a physical tag.

        Returns
        -------
        Mesh
            Base mesh with triangles and quads, boundary markers taken from
            line cells tagged with ``gmsh:physical``.
        """
        import meshio as mio

        if isinstance(mesh, (str, Path)):
            mesh = mio.read(mesh)

        cells: list[tuple[int, ...]] = []
        for block in mesh.cells:
            if block.type in ("triangle", "quad"):
                cells.extend(tuple(int(v) for v in c) for c in block.data)
        if not cells:
            raise MeshError("No triangle or quad cells found in mesh")

        markers: dict[tuple[int, int], int] = {}
        physical = mesh.cell_data_dict.get("gmsh:physical", {}) if mesh.cell_data else {}
        if "line" in mesh.cells_dict and "line" in physical:
            for (a, b), tag in zip(mesh.cells_dict["line"], physical["line"]):
                markers[edge_key(int(a), int(b))] = int(tag)

        return cls.from_arrays(mesh.points[:, :2], cells, markers, default_marker=default_marker)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def max_element_id(self) -> int:
        return len(self.elements)

    @property
    def num_base_elements(self) -> int:
        return self.nbase

    @property
    def num_active_elements(self) -> int:
        return sum(1 for e in self.elements if e.active)

    def get_element(self, eid: int) -> Element:
        if not 0 <= eid < len(self.elements):
            raise MeshError(f"Element id {eid} out of range [0, {len(self.elements)})")
        return self.elements[eid]

    def active_element(self, eid: int) -> Element:
        e = self.get_element(eid)
        if not e.active:
            raise MeshError(f"Element {eid} is not active")
        return e

    def active_elements(self) -> Iterator[Element]:
        for e in self.elements:
            if e.active:
                yield e

    def vertex_xy(self, eid: int) -> NDArray[np.float64]:
        e = self.elements[eid]
        return np.array([[self.nodes[v].x, self.nodes[v].y] for v in e.vn])

    def leaves(self, eid: int) -> list[int]:
        """Active descendants of an element (the element itself if active)."""
        out, stack = [], [eid]
        while stack:
            e = self.elements[stack.pop()]
            if e.active:
                out.append(e.id)
            else:
                stack.extend(reversed(e.sons))
        return sorted(out)

    def ref_to_phys(self, eid: int, xi, eta):
        xy = self.vertex_xy(eid)
        xi = np.asarray(xi, dtype=np.float64)
        eta = np.asarray(eta, dtype=np.float64)
        if self.elements[eid].is_quad:
            N = np.array([
                0.25 * (1 - xi) * (1 - eta),
                0.25 * (1 + xi) * (1 - eta),
                0.25 * (1 + xi) * (1 + eta),
                0.25 * (1 - xi) * (1 + eta),
            ])
        else:
            N = np.array([1.0 - xi - eta, xi, eta])
        return np.tensordot(xy[:, 0], N, axes=1), np.tensordot(xy[:, 1], N, axes=1)

    def jacobian(self, eid: int, xi, eta) -> NDArray[np.float64]:
        """J[k, i, j] = d x_i / d xi_j at each point k."""
        xy = self.vertex_xy(eid)
        xi = np.atleast_1d(np.asarray(xi, dtype=np.float64))
        eta = np.atleast_1d(np.asarray(eta, dtype=np.float64))
        J = np.empty((xi.size, 2, 2))
        if self.elements[eid].is_quad:
            dN_dxi = np.array([-(1 - eta), (1 - eta), (1 + eta), -(1 + eta)]) * 0.25
            dN_deta = np.array([-(1 - xi), -(1 + xi), (1 + xi), (1 - xi)]) * 0.25
            J[:, :, 0] = (dN_dxi.T @ xy)
            J[:, :, 1] = (dN_deta.T @ xy)
        else:
            J[:] = np.column_stack((xy[1] - xy[0], xy[2] - xy[0]))
        return J

    def to_ancestor(self, eid: int, xi, eta, ancestor: int):
        """Map reference coordinates of ``eid`` into those of one of its ancestors."""
        pts = np.vstack((np.atleast_1d(xi), np.atleast_1d(eta))).astype(np.float64)
        e = self.elements[eid]
        while e.id != ancestor:
            if e.parent is None:
                raise MeshError(f"Element {ancestor} is not an ancestor of {eid}")
            A, b = e.trf
            pts = A @ pts + b[:, None]
            e = self.elements[e.parent]
        return pts[0], pts[1]

    def sub_transform(self, eid: int, ancestor: int):
        """Composite affine map (A, b) from ``eid`` reference coords to ``ancestor``'s."""
        A, b = np.eye(2), np.zeros(2)
        e = self.elements[eid]
        while e.id != ancestor:
            if e.parent is None:
                raise MeshError(f"Element {ancestor} is not an ancestor of {eid}")
            Ai, bi = e.trf
            A, b = Ai @ A, Ai @ b + bi
            e = self.elements[e.parent]
        return A, b

    def _phys_to_ref(self, eid: int, x: float, y: float) -> tuple[float, float]:
        xy = self.vertex_xy(eid)
        if self.elements[eid].is_triangle:
            J = np.column_stack((xy[1] - xy[0], xy[2] - xy[0]))
            xi, eta = np.linalg.solve(J, np.array([x, y]) - xy[0])
            return float(xi), float(eta)
        ref = np.zeros(2)
        for _ in range(25):
            px, py = self.ref_to_phys(eid, ref[0], ref[1])
            r = np.array([px - x, py - y])
            if np.hypot(*r) < 1e-14:
                break
            ref = ref - np.linalg.solve(self.jacobian(eid, ref[0], ref[1])[0], r)
        return float(ref[0]), float(ref[1])

    def locate(self, x: float, y: float) -> tuple[int, float, float]:
        """Find the active element containing (x, y) and its reference coordinates."""
        for root in self.elements:
            if root.parent is not None:
                continue
            xi, eta = self._phys_to_ref(root.id, x, y)
            if not inside_reference(root.is_quad, xi, eta, 1e-9):
                continue
            e = root
            while not e.active:
                for sid in e.sons:
                    A, b = self.elements[sid].trf
                    s = np.linalg.solve(A, np.array([xi, eta]) - b)
                    if inside_reference(e.is_quad, s[0], s[1], 1e-9):
                        xi, eta, e = float(s[0]), float(s[1]), self.elements[sid]
                        break
                else:
                    raise MeshError(f"Point ({x}, {y}) lost while descending element {e.id}")
            return e.id, xi, eta
        raise MeshError(f"Point ({x}, {y}) lies outside the mesh")

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def _mid(self, a: int, b: int) -> int:
        key = edge_key(a, b)
        m = self._vertex_mid.get(key)
        if m is not None:
            return m
        na, nb = self.nodes[a], self.nodes[b]
        m = self.add_vertex(0.5 * (na.x + nb.x), 0.5 * (na.y + nb.y))
        self._vertex_mid[key] = m
        parent_edge = self.edge_node(a, b)
        if parent_edge is not None and parent_edge.boundary:
            for sub in ((a, m), (m, b)):
                node = self.nodes[self._get_edge_node(*sub)]
                node.boundary, node.marker = True, parent_edge.marker
        return m

    def _center(self, m01: int, m12: int, m23: int, m30: int) -> int:
        for key in (edge_key(m01, m23), edge_key(m12, m30)):
            if key in self._vertex_mid:
                return self._vertex_mid[key]
        c = self._mid(m01, m23)
        self._vertex_mid[edge_key(m12, m30)] = c
        return c

    def refine_element(self, eid: int, mode: RefinementMode = RefinementMode.ISO) -> tuple[int, ...]:
        """Split an active element, returning the ids of its sons."""
        e = self.active_element(eid)
        mode = RefinementMode(mode)
        ref: dict[int, tuple[float, float]]

        if e.is_quad:
            v0, v1, v2, v3 = e.vn
            ref = {v: tuple(c) for v, c in zip(e.vn, QUAD_REF)}
            if mode == RefinementMode.ISO:
                m01, m12, m23, m30 = self._mid(v0, v1), self._mid(v1, v2), self._mid(v2, v3), self._mid(v3, v0)
                c = self._center(m01, m12, m23, m30)
                ref.update({m01: (0.0, -1.0), m12: (1.0, 0.0), m23: (0.0, 1.0), m30: (-1.0, 0.0), c: (0.0, 0.0)})
                sons_vn = [(v0, m01, c, m30), (m01, v1, m12, c), (c, m12, v2, m23), (m30, c, m23, v3)]
            elif mode == RefinementMode.ANISO_H:
                m12, m30 = self._mid(v1, v2), self._mid(v3, v0)
                ref.update({m12: (1.0, 0.0), m30: (-1.0, 0.0)})
                sons_vn = [(v0, v1, m12, m30), (m30, m12, v2, v3)]
            else:
                m01, m23 = self._mid(v0, v1), self._mid(v2, v3)
                ref.update({m01: (0.0, -1.0), m23: (0.0, 1.0)})
                sons_vn = [(v0, m01, m23, v3), (m01, v1, v2, m23)]
        else:
            if mode != RefinementMode.ISO:
                raise MeshError(f"Triangle {eid} cannot be refined anisotropically")
            # Newest-vertex bisection: the refinement edge is opposite vn[0]
            v0, v1, v2 = e.vn
            m = self._mid(v1, v2)
            ref = {v: tuple(c) for v, c in zip(e.vn, TRI_REF)}
            ref[m] = (0.5, 0.5)
            sons_vn = [(m, v0, v1), (m, v2, v0)]

        sons = []
        for vn in sons_vn:
            trf = _son_transform(np.array([ref[v] for v in vn]), e.is_quad)
            sons.append(
                self._add_element(vn, marker=e.marker, curved=e.curved, parent=e.id,
                                  level=e.level + 1, trf=trf)
            )
        e.active = False
        e.sons = tuple(sons)
        e.split = mode
        self.version += 1
        return e.sons

    def refine_all_elements(self) -> None:
        for eid in [e.id for e in self.active_elements()]:
            self.refine_element(eid, RefinementMode.ISO)

    def refine_towards_boundary(self, marker: int, levels: int) -> None:
        """Refine elements touching the boundary part ``marker``, ``levels`` times."""
        for _ in range(levels):
            touching = set()
            for node in self.nodes:
                if node.kind == "edge" and node.boundary and node.marker == marker:
                    touching.update((node.p1, node.p2))
            targets = [e.id for e in self.active_elements() if touching.intersection(e.vn)]
            for eid in targets:
                self.refine_element(eid, RefinementMode.ISO)

    # ------------------------------------------------------------------
    # Hanging nodes
    # ------------------------------------------------------------------

    def active_edge_map(self) -> dict[tuple[int, int], list[tuple[int, int]]]:
        """Edges of active elements -> list of (element id, local edge index)."""
        edges: dict[tuple[int, int], list[tuple[int, int]]] = {}
        for e in self.active_elements():
            for i, (a, b) in enumerate(e.edges()):
                edges.setdefault(edge_key(a, b), []).append((e.id, i))
        return edges

    def hanging_level(self, a: int, b: int) -> int:
        m = self._vertex_mid.get(edge_key(a, b))
        if m is None:
            return 0
        return 1 + max(self.hanging_level(a, m), self.hanging_level(m, b))

    def sub_edges(self, a: int, b: int) -> tuple[list[int], list[tuple[int, int]]]:
        """Hanging vertices and sub-edges lying inside edge (a, b)."""
        verts: list[int] = []
        edges: list[tuple[int, int]] = []
        stack = [(a, b)]
        while stack:
            p, q = stack.pop()
            m = self._vertex_mid.get(edge_key(p, q))
            if m is None:
                continue
            verts.append(m)
            for sub in ((p, m), (m, q)):
                edges.append(edge_key(*sub))
                stack.append(sub)
        return verts, edges

    def constraints(self):
        """Classify constrained (hanging) entities of the active mesh.

        Returns
        -------
        edges : dict
            Active edge map, see ``active_edge_map``.
        hanging_vertices : set of int
        constrained_edges : dict
            Constrained sub-edge key -> key of the constraining edge.
        """
        edges = self.active_edge_map()
        hanging: set[int] = set()
        inner: set[tuple[int, int]] = set()
        for a, b in edges:
            verts, subs = self.sub_edges(a, b)
            hanging.update(verts)
            inner.update(subs)
        constrained: dict[tuple[int, int], tuple[int, int]] = {}
        for key in edges:
            if key in inner:
                continue
            for sub in self.sub_edges(*key)[1]:
                constrained[sub] = key
        return edges, hanging, constrained

    def regularize(self, level: int, max_passes: int = 100) -> list[int]:
        """Refine elements until no edge carries more than ``level`` hanging levels.

        Returns the ids of the elements refined for regularity.
        """
        if level == ARBITRARY_REGULARITY:
            return []
        refined: list[int] = []
        for _ in range(max_passes):
            targets = set()
            for (a, b), users in self.active_edge_map().items():
                if self.hanging_level(a, b) > level:
                    targets.update(eid for eid, _ in users)
            if not targets:
                return refined
            for eid in sorted(targets):
                log.debug(f"Refining element {eid} to keep hanging level <= {level}")
                self.refine_element(eid, RefinementMode.ISO)
                refined.append(eid)
        raise RegularityError(
            f"Hanging-node level {level} not reached after {max_passes} passes"
        )

    # ------------------------------------------------------------------
    # Copies
    # ------------------------------------------------------------------

    def copy(self) -> Mesh:
        """Full duplicate, element ids preserved."""
        return _copy.deepcopy(self)

    def copy_base(self) -> Mesh:
        """Duplicate containing only the coarsest (base) elements."""
        base = [e for e in self.elements if e.parent is None]
        return self._extract(base)

    def copy_refine(self) -> Mesh:
        """Duplicate containing only the elements created by refinement."""
        refined = [e for e in self.elements if e.parent is not None]
        return self._extract(refined)

    def _extract(self, subset: list[Element]) -> Mesh:
        dup = Mesh()
        id_map = {e.id: i for i, e in enumerate(subset)}
        vmap: dict[int, int] = {}
        for e in subset:
            for v in e.vn:
                if v not in vmap:
                    vmap[v] = dup.add_vertex(self.nodes[v].x, self.nodes[v].y)
        for e in subset:
            has_parent = e.parent in id_map
            dup._add_element(
                [vmap[v] for v in e.vn], marker=e.marker, curved=e.curved,
                parent=id_map[e.parent] if has_parent else None,
                level=e.level,
                trf=_copy.deepcopy(e.trf) if has_parent else None,
            )
            d = dup.elements[-1]
            d.active = e.active if all(s in id_map for s in e.sons) else True
            if not d.active:
                d.sons = tuple(id_map[s] for s in e.sons)
                d.split = e.split
        for key, m in self._vertex_mid.items():
            if key[0] in vmap and key[1] in vmap and m in vmap:
                dup._vertex_mid[edge_key(vmap[key[0]], vmap[key[1]])] = vmap[m]
        for key, nid in self._edge_nodes.items():
            src = self.nodes[nid]
            if key[0] in vmap and key[1] in vmap:
                node = dup.edge_node(vmap[key[0]], vmap[key[1]])
                if node is not None:
                    node.boundary, node.marker = src.boundary, src.marker
        dup.nbase = sum(1 for e in dup.elements if e.parent is None)
        return dup


def rectangle_mesh(
    nx: int,
    ny: int,
    x0: float = 0.0,
    y0: float = 0.0,
    L1: float = 1.0,
    L2: float = 1.0,
    triangles: bool = False,
) -> Mesh:
    """Structured mesh of [x0, x0+L1] x [y0, y0+L2] with side markers BOTTOM..LEFT."""
    xs = np.linspace(x0, x0 + L1, nx + 1)
    ys = np.linspace(y0, y0 + L2, ny + 1)
    XX, YY = np.meshgrid(xs, ys, indexing="ij")
    vertices = np.column_stack((XX.ravel(), YY.ravel()))

    def vid(i, j):
        return i * (ny + 1) + j

    cells = []
    for i in range(nx):
        for j in range(ny):
            sw, se, ne, nw = vid(i, j), vid(i + 1, j), vid(i + 1, j + 1), vid(i, j + 1)
            if triangles:
                # Longest edge (the diagonal) opposite the first vertex
                cells.append((se, ne, sw))
                cells.append((nw, sw, ne))
            else:
                cells.append((sw, se, ne, nw))

    markers = {}
    for i in range(nx):
        markers[(vid(i, 0), vid(i + 1, 0))] = BOTTOM
        markers[(vid(i, ny), vid(i + 1, ny))] = TOP
    for j in range(ny):
        markers[(vid(0, j), vid(0, j + 1))] = LEFT
        markers[(vid(nx, j), vid(nx, j + 1))] = RIGHT
    return Mesh.from_arrays(vertices, cells, markers)
