"""Hierarchical shape functions on the reference elements.

A local shape function is identified by a tuple:

    ("vertex", i)              vertex function of local vertex i
    ("edge", i, k, sign)       k-th function of local edge i
    ("bubble", j)              j-th interior function

Local edge i runs from vertex i to vertex i+1. ``sign`` is +1 when that
direction goes from the lower to the higher global vertex id, and -1
otherwise. Edge functions are written in the edge parameter t in [-1, 1]
that runs from the lower to the higher id, so the two elements sharing an
edge see the same trace:

    H1      the trace of the k-th edge function is the Lobatto function
            l_k(t), k = 2..p; vertex functions are the usual hat functions
    H(curl) the tangential trace E . dx/dt of the k-th edge function is
            the Legendre polynomial P_k(t), k = 0..p
    L2      no vertex or edge functions, the bubbles are the complete
            local polynomial basis

H(curl) fields are mapped with the covariant Piola transform
E(x) = J^{-T} E_ref(xi).
"""

from __future__ import annotations

from functools import lru_cache

import numpy as np
from numpy.typing import NDArray

from .quadrature import (
    gauss_1d,
    legendre_second_derivative,
    legendre_with_derivative,
    local_basis,
    lobatto,
    tri_basis,
    tri_rule,
)

Shape = tuple

# (axis along the edge, Lobatto index across it, direction) of the quad edges
QUAD_EDGES = [(0, 0, 1), (1, 1, 1), (0, 1, -1), (1, 0, -1)]
QUAD_VERTICES = [(0, 0), (1, 0), (1, 1), (0, 1)]

TRI_VERTICES = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
# gradients of the barycentric coordinates 1-xi-eta, xi, eta
TRI_GRADS = np.array([[-1.0, -1.0], [1.0, 0.0], [0.0, 1.0]])


def max_order(order) -> int:
    return max(order) if isinstance(order, tuple) else int(order)


def edge_order(is_quad: bool, order, local_edge: int) -> int:
    """Order along a local edge: px on bottom/top, py on right/left of a quad."""
    if is_quad:
        return order[0] if local_edge in (0, 2) else order[1]
    return order


def element_shapes(kind, is_quad: bool, order) -> list[Shape]:
    """Shape functions of an element on its own, with every edge at the element's order."""
    nv = 4 if is_quad else 3
    shapes: list[Shape] = []
    if kind.vertex_functions:
        shapes += [("vertex", i) for i in range(nv)]
    if kind.continuity != "none":
        for i in range(nv):
            n = kind.edge_count(edge_order(is_quad, order, i))
            first = kind.first_edge_function
            shapes += [("edge", i, k, 1) for k in range(first, first + n)]
    shapes += [("bubble", j) for j in range(kind.bubble_count(is_quad, order))]
    return shapes


def polynomial_degree(kind, order, shapes) -> int:
    """Highest total polynomial degree among the given shapes in reference coordinates."""
    deg = max([max_order(order)] + [s[2] for s in shapes if s[0] == "edge"])
    return deg + 1 if kind.continuity == "tangential" else deg


def _edge_orders(shapes, nv: int) -> list[int]:
    top = [0] * nv
    for s in shapes:
        if s[0] == "edge":
            top[s[1]] = max(top[s[1]], s[2])
    return top


# ----------------------------------------------------------------------------
# H1
# ----------------------------------------------------------------------------


def _h1_quad(order, shapes, xi, eta):
    px, py = order
    n = max([px, py, 1] + _edge_orders(shapes, 4))
    Lx, dLx = lobatto(n, xi)
    Ly, dLy = lobatto(n, eta)
    bubbles = [(a, b) for a in range(2, px + 1) for b in range(2, py + 1)]

    vals = np.zeros((len(shapes), 1, xi.size))
    grads = np.zeros((len(shapes), 1, 2, xi.size))
    for r, s in enumerate(shapes):
        c = 1.0
        if s[0] == "vertex":
            a, b = QUAD_VERTICES[s[1]]
        elif s[0] == "edge":
            _, i, k, sign = s
            axis, across, direction = QUAD_EDGES[i]
            a, b = (k, across) if axis == 0 else (across, k)
            c = float(direction * sign) ** k
        else:
            a, b = bubbles[s[1]]
        vals[r, 0] = c * Lx[a] * Ly[b]
        grads[r, 0, 0] = c * dLx[a] * Ly[b]
        grads[r, 0, 1] = c * Lx[a] * dLy[b]
    return vals, grads


def _h1_tri(p, shapes, xi, eta):
    lam = np.stack((1.0 - xi - eta, xi, eta))
    n = max([p, 2] + _edge_orders(shapes, 3))
    vals = np.zeros((len(shapes), 1, xi.size))
    grads = np.zeros((len(shapes), 1, 2, xi.size))

    bubble = lam[0] * lam[1] * lam[2]
    dbubble = sum(
        np.outer(TRI_GRADS[i], lam[(i + 1) % 3] * lam[(i + 2) % 3]) for i in range(3)
    )
    mono, ds, dt = tri_basis(max(p - 3, 0), xi, eta)

    for r, s in enumerate(shapes):
        if s[0] == "vertex":
            vals[r, 0] = lam[s[1]]
            grads[r, 0] = TRI_GRADS[s[1]][:, None]
        elif s[0] == "edge":
            _, i, k, sign = s
            a, b = i, (i + 1) % 3
            t = sign * (lam[b] - lam[a])
            _, dP, ddP = legendre_second_derivative(n, t)
            # l_k(t) = (1 - t^2) / 4 * kernel_k(t)
            c = -4.0 * np.sqrt((2 * k - 1) / 2.0) / (k * (k - 1))
            ker, dker = c * dP[k - 1], c * ddP[k - 1]
            prod = lam[a] * lam[b]
            dprod = np.outer(TRI_GRADS[a], lam[b]) + np.outer(TRI_GRADS[b], lam[a])
            dt_ = sign * (TRI_GRADS[b] - TRI_GRADS[a])
            vals[r, 0] = prod * ker
            grads[r, 0] = dprod * ker + np.outer(dt_, prod * dker)
        else:
            j = s[1]
            vals[r, 0] = bubble * mono[j]
            grads[r, 0] = dbubble * mono[j] + bubble * np.stack((ds[j], dt[j]))
    return vals, grads


# ----------------------------------------------------------------------------
# H(curl)
# ----------------------------------------------------------------------------


def _hcurl_quad(order, shapes, xi, eta):
    px, py = order
    n = max([px, py] + _edge_orders(shapes, 4)) + 1
    Px, dPx = legendre_with_derivative(n, xi)
    Py, dPy = legendre_with_derivative(n, eta)
    Lx, dLx = lobatto(n, xi)
    Ly, dLy = lobatto(n, eta)
    x_bubbles = [(i, j) for i in range(px + 1) for j in range(2, py + 2)]
    y_bubbles = [(i, j) for i in range(2, px + 2) for j in range(py + 1)]

    vals = np.zeros((len(shapes), 2, xi.size))
    grads = np.zeros((len(shapes), 2, 2, xi.size))

    def put(r, comp, c, f, df_dxi, df_deta):
        vals[r, comp] = c * f
        grads[r, comp, 0] = c * df_dxi
        grads[r, comp, 1] = c * df_deta

    for r, s in enumerate(shapes):
        if s[0] == "edge":
            _, i, k, sign = s
            axis, across, direction = QUAD_EDGES[i]
            c = float(direction * sign) ** (k + 1)
            if axis == 0:
                put(r, 0, c, Px[k] * Ly[across], dPx[k] * Ly[across], Px[k] * dLy[across])
            else:
                put(r, 1, c, Lx[across] * Py[k], dLx[across] * Py[k], Lx[across] * dPy[k])
        elif s[1] < len(x_bubbles):
            a, b = x_bubbles[s[1]]
            put(r, 0, 1.0, Px[a] * Ly[b], dPx[a] * Ly[b], Px[a] * dLy[b])
        else:
            a, b = y_bubbles[s[1] - len(x_bubbles)]
            put(r, 1, 1.0, Lx[a] * Py[b], dLx[a] * Py[b], Lx[a] * dPy[b])
    return vals, grads


def _nedelec_span(p: int, xi, eta):
    """Spanning set of the degree-p Nedelec space: (P_p)^2 plus x^perp times homogeneous P_p."""
    mono, ds, dt = tri_basis(p, xi, eta)
    zero = np.zeros_like(mono[0])
    vals, grads = [], []
    for m, ms, mt in zip(mono, ds, dt):
        vals += [(m, zero), (zero, m)]
        grads += [((ms, mt), (zero, zero)), ((zero, zero), (ms, mt))]
    s, t = xi - 1.0 / 3.0, eta - 1.0 / 3.0
    for q, qs, qt in zip(mono[-(p + 1):], ds[-(p + 1):], dt[-(p + 1):]):
        vals.append((-t * q, s * q))
        grads.append(((-t * qs, -q - t * qt), (q + s * qs, s * qt)))
    return np.array(vals), np.array(grads)


@lru_cache(maxsize=16)
def _nedelec_dual(p: int) -> NDArray[np.float64]:
    """Coefficients, over the spanning set, of the basis dual to the Nedelec degrees of freedom.

    Edge functionals take the Legendre moments (2k+1)/2 * int E.dxi/ds P_k(s) ds,
    interior ones the moments of both components against P_{p-1}.
    """
    x, w = gauss_1d(p + 2)
    rows = []
    for i in range(3):
        a, b = TRI_VERTICES[i], TRI_VERTICES[(i + 1) % 3]
        xi = a[0] + 0.5 * (x + 1.0) * (b[0] - a[0])
        eta = a[1] + 0.5 * (x + 1.0) * (b[1] - a[1])
        V, _ = _nedelec_span(p, xi, eta)
        tang = 0.5 * (V[:, 0] * (b[0] - a[0]) + V[:, 1] * (b[1] - a[1]))
        P, _ = legendre_with_derivative(p, x)
        for k in range(p + 1):
            rows.append(0.5 * (2 * k + 1) * (tang * P[k] * w).sum(axis=1))
    if p > 0:
        xi, eta, wt = tri_rule(p + 2)
        V, _ = _nedelec_span(p, xi, eta)
        mono, _, _ = tri_basis(p - 1, xi, eta)
        for comp in (0, 1):
            for m in mono:
                rows.append((V[:, comp] * m * wt).sum(axis=1))
    return np.linalg.inv(np.array(rows))


def _hcurl_tri(p, shapes, xi, eta):
    edge_orders = _edge_orders(shapes, 3)
    spans = {}

    def dual(q, column):
        if q not in spans:
            spans[q] = _nedelec_span(q, xi, eta)
        V, G = spans[q]
        C = _nedelec_dual(q)[:, column]
        return np.tensordot(C, V, axes=1), np.tensordot(C, G, axes=1)

    vals = np.zeros((len(shapes), 2, xi.size))
    grads = np.zeros((len(shapes), 2, 2, xi.size))
    for r, s in enumerate(shapes):
        if s[0] == "edge":
            _, i, k, sign = s
            q = edge_orders[i]
            v, g = dual(q, i * (q + 1) + k)
            c = float(sign) ** (k + 1)
            vals[r], grads[r] = c * v, c * g
        else:
            vals[r], grads[r] = dual(p, 3 * (p + 1) + s[1])
    return vals, grads


# ----------------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------------


def reference_shapes(kind, is_quad: bool, order, shapes, xi, eta):
    """Shape values (nsh, ncomp, npts) and reference gradients (nsh, ncomp, 2, npts)."""
    xi = np.atleast_1d(np.asarray(xi, dtype=np.float64))
    eta = np.atleast_1d(np.asarray(eta, dtype=np.float64))
    if kind.name == "h1":
        return (_h1_quad if is_quad else _h1_tri)(order, shapes, xi, eta)
    if kind.name == "hcurl":
        return (_hcurl_quad if is_quad else _hcurl_tri)(order, shapes, xi, eta)
    phi, dxi, deta = local_basis(is_quad, order, xi, eta)
    idx = [s[1] for s in shapes]
    return phi[idx][:, None], np.stack((dxi[idx], deta[idx]), axis=1)[:, None]


def physical_shapes(kind, is_quad: bool, order, shapes, xi, eta, J: NDArray):
    """Shape values and physical gradients for a map with Jacobians J[k] = dx/dxi.

    Gradients of H(curl) fields drop the derivative of J^{-T}; for affine
    maps this is exact, otherwise the omitted part is symmetric and the
    curl is still exact.
    """
    vals, grads = reference_shapes(kind, is_quad, order, shapes, xi, eta)
    inv = np.linalg.inv(J)
    grads = np.einsum("ncjp,pji->ncip", grads, inv)
    if kind.continuity == "tangential":
        vals = np.einsum("ndp,pdc->ncp", vals, inv)
        grads = np.einsum("ndip,pdc->ncip", grads, inv)
    return vals, grads
