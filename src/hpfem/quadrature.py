"""Quadrature rules and one-dimensional polynomial families on the reference elements.

Reference quad: [-1, 1]^2, vertices (-1,-1), (1,-1), (1,1), (-1,1).
Reference triangle: vertices (0,0), (1,0), (0,1).
"""

from __future__ import annotations

from functools import lru_cache

import numpy as np
from numpy.polynomial.legendre import leggauss
from numpy.typing import NDArray


@lru_cache(maxsize=64)
def gauss_1d(n: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Gauss-Legendre points and weights on [-1, 1] (exact to degree 2n-1)."""
    return leggauss(n)


def points_for_order(order: int) -> int:
    """Number of 1D Gauss points integrating products of two order-p polynomials."""
    return order + 2


@lru_cache(maxsize=64)
def quad_rule(n: int) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """Tensor Gauss rule on [-1, 1]^2. Returns (xi, eta, w)."""
    x, w = gauss_1d(n)
    XI, ETA = np.meshgrid(x, x, indexing="ij")
    W = np.outer(w, w)
    return XI.ravel(), ETA.ravel(), W.ravel()


@lru_cache(maxsize=64)
def tri_rule(n: int) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """Collapsed (Duffy) Gauss rule on the reference triangle. Weights sum to 1/2."""
    x, w = gauss_1d(n)
    u = 0.5 * (x + 1.0)
    wu = 0.5 * w
    U, V = np.meshgrid(u, u, indexing="ij")
    WU, WV = np.meshgrid(wu, wu, indexing="ij")
    xi = U
    eta = V * (1.0 - U)
    weights = WU * WV * (1.0 - U)
    return xi.ravel(), eta.ravel(), weights.ravel()


def element_rule(is_quad: bool, n: int):
    return quad_rule(n) if is_quad else tri_rule(n)


def legendre_with_derivative(n: int, x: NDArray[np.float64]):
    """Legendre polynomials P_0..P_n and their derivatives at x, shape (n+1, len(x))."""
    x = np.asarray(x, dtype=np.float64)
    P = np.zeros((n + 1, x.size))
    dP = np.zeros((n + 1, x.size))
    P[0] = 1.0
    if n >= 1:
        P[1] = x
        dP[1] = 1.0
    for k in range(2, n + 1):
        P[k] = ((2 * k - 1) * x * P[k - 1] - (k - 1) * P[k - 2]) / k
        dP[k] = dP[k - 2] + (2 * k - 1) * P[k - 1]
    return P, dP


def quad_basis(px: int, py: int, xi, eta):
    """Tensor Legendre basis of order (px, py).

    Returns
    -------
    phi, dphi_dxi, dphi_deta : ndarray, shape ((px+1)*(py+1), npts)
    """
    Px, dPx = legendre_with_derivative(px, xi)
    Py, dPy = legendre_with_derivative(py, eta)
    phi = (Px[:, None, :] * Py[None, :, :]).reshape(-1, Px.shape[1])
    dxi = (dPx[:, None, :] * Py[None, :, :]).reshape(-1, Px.shape[1])
    deta = (Px[:, None, :] * dPy[None, :, :]).reshape(-1, Px.shape[1])
    return phi, dxi, deta


def tri_basis(p: int, xi, eta):
    """Complete polynomials of degree p on the reference triangle (shifted monomials)."""
    # Centering at the barycenter keeps the Gram matrix well conditioned
    s = np.asarray(xi, dtype=np.float64) - 1.0 / 3.0
    t = np.asarray(eta, dtype=np.float64) - 1.0 / 3.0
    rows, dxs, dys = [], [], []
    for total in range(p + 1):
        for j in range(total + 1):
            i = total - j
            rows.append(s**i * t**j)
            dxs.append(i * s ** max(i - 1, 0) * t**j if i > 0 else np.zeros_like(s))
            dys.append(j * s**i * t ** max(j - 1, 0) if j > 0 else np.zeros_like(s))
    return np.array(rows), np.array(dxs), np.array(dys)


def local_dimension(is_quad: bool, order) -> int:
    if is_quad:
        px, py = order
        return (px + 1) * (py + 1)
    return (order + 1) * (order + 2) // 2


def local_basis(is_quad: bool, order, xi, eta):
    if is_quad:
        px, py = order
        return quad_basis(px, py, xi, eta)
    return tri_basis(order, xi, eta)


def legendre_second_derivative(n: int, x: NDArray[np.float64]):
    """P_k, P_k' and P_k'' for k = 0..n at x, each of shape (n+1, len(x))."""
    P, dP = legendre_with_derivative(n, x)
    ddP = np.zeros_like(P)
    for k in range(2, n + 1):
        ddP[k] = ddP[k - 2] + (2 * k - 1) * dP[k - 1]
    return P, dP, ddP


def lobatto(n: int, t):
    """Lobatto shape functions l_0..l_n on [-1, 1] and their derivatives.

    l_0 = (1-t)/2, l_1 = (1+t)/2 and l_k = (P_k - P_{k-2}) / sqrt(2(2k-1))
    for k >= 2. The derivatives of l_2, l_3, ... are orthonormal in L2(-1, 1).

    Returns
    -------
    L, dL : ndarray, shape (n+1, len(t))
    """
    t = np.atleast_1d(np.asarray(t, dtype=np.float64))
    P, _ = legendre_with_derivative(max(n, 1), t)
    L = np.zeros((n + 1, t.size))
    dL = np.zeros((n + 1, t.size))
    L[0], dL[0] = 0.5 * (1.0 - t), -0.5
    if n >= 1:
        L[1], dL[1] = 0.5 * (1.0 + t), 0.5
    for k in range(2, n + 1):
        c = np.sqrt(2.0 * (2 * k - 1))
        L[k] = (P[k] - P[k - 2]) / c
        dL[k] = (2 * k - 1) * P[k - 1] / c
    return L, dL
