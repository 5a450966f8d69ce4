"""Benchmark problems with known exact solutions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from .mesh import BOTTOM, LEFT, RIGHT, TOP, Mesh, rectangle_mesh
from .norms import EnergyNorm, HcurlNorm, Norm
from .space import BC_ESSENTIAL, H1, HCURL, SpaceKind


class Problem(ABC):
    """Second-order elliptic problem -div(a grad u) + c u = f with exact solution.

    Subclasses provide the exact solution, its gradient and an initial mesh.
    Essential boundary values are taken from the exact solution. ``kind``
    is the space the solution lives in.
    """

    diffusion: float = 1.0
    reaction: float = 0.0
    kind: SpaceKind = H1

    @abstractmethod
    def exact(self, x, y):
        """Exact solution at physical points."""

    @abstractmethod
    def gradient(self, x, y):
        """(du/dx, du/dy) at physical points."""

    @abstractmethod
    def initial_mesh(self) -> Mesh:
        """Coarse mesh of the domain."""

    @property
    def ncomp(self) -> int:
        return self.kind.ncomp

    def bc_types(self, marker: int) -> str:
        return BC_ESSENTIAL

    def essential_bc_values(self, marker: int, x: float, y: float) -> float:
        return float(self.exact(np.asarray(x), np.asarray(y)))

    def energy_norm(self) -> Norm:
        return EnergyNorm(self.diffusion, self.reaction)


@dataclass
class Layer(Problem):
    """-Laplace u + K^2 u = K^2 + g on (-1, 1)^2 with boundary layers along all sides.

    u(x, y) = U(x) U(y), U(t) = 1 - cosh(K t) / cosh(K).
    """

    K: float = 100.0
    nx: int = 2
    ny: int = 2
    triangles: bool = False

    @property
    def reaction(self) -> float:
        return self.K**2

    def _ratio(self, t):
        # cosh(K t) / cosh(K) and sinh(K t) / cosh(K) without overflow
        a = np.abs(t)
        scale = np.exp(self.K * (a - 1.0)) / (1.0 + np.exp(-2.0 * self.K))
        decay = np.exp(-2.0 * self.K * a)
        return scale * (1.0 + decay), np.sign(t) * scale * (1.0 - decay)

    def _U(self, t):
        c, s = self._ratio(np.asarray(t, dtype=np.float64))
        return 1.0 - c, -self.K * s

    def exact(self, x, y):
        return self._U(x)[0] * self._U(y)[0]

    def gradient(self, x, y):
        ux, dux = self._U(x)
        uy, duy = self._U(y)
        return np.array([dux * uy, ux * duy])

    def initial_mesh(self) -> Mesh:
        return rectangle_mesh(self.nx, self.ny, -1.0, -1.0, 2.0, 2.0, triangles=self.triangles)


@dataclass
class SmoothIso(Problem):
    """-Laplace u = 2 sin(x) sin(y) on (0, pi)^2, u = sin(x) sin(y)."""

    nx: int = 1
    ny: int = 1
    triangles: bool = False

    def exact(self, x, y):
        return np.sin(x) * np.sin(y)

    def gradient(self, x, y):
        return np.array([np.cos(x) * np.sin(y), np.sin(x) * np.cos(y)])

    def initial_mesh(self) -> Mesh:
        return rectangle_mesh(self.nx, self.ny, 0.0, 0.0, np.pi, np.pi, triangles=self.triangles)


@dataclass
class InteriorLayer(Problem):
    """Laplace u = 0 with a steep circular front.

    u = atan(slope * (r - pi/3)), r the distance from (1.25, -0.25).
    """

    slope: float = 60.0
    nx: int = 2
    ny: int = 2
    triangles: bool = False

    center = (1.25, -0.25)

    def _r(self, x, y):
        return np.hypot(np.asarray(x) - self.center[0], np.asarray(y) - self.center[1])

    def exact(self, x, y):
        return np.arctan(self.slope * (self._r(x, y) - np.pi / 3))

    def gradient(self, x, y):
        r = self._r(x, y)
        u = r * (self.slope**2 * (r - np.pi / 3) ** 2 + 1.0)
        return np.array([
            self.slope * (np.asarray(x) - self.center[0]) / u,
            self.slope * (np.asarray(y) - self.center[1]) / u,
        ])

    def initial_mesh(self) -> Mesh:
        return rectangle_mesh(self.nx, self.ny, 0.0, 0.0, 1.0, 1.0, triangles=self.triangles)


# Counter-clockwise unit tangents of the rectangle sides
TANGENTS = {BOTTOM: (1.0, 0.0), RIGHT: (0.0, 1.0), TOP: (-1.0, 0.0), LEFT: (0.0, -1.0)}


@dataclass
class Vortex(Problem):
    """curl curl E + E = F on (0, 1)^2, a field rotating about the center.

    E = phi(r) (-(y - cy), x - cx) with phi = atan(slope * (r - radius)),
    so the field turns over sharply across a circle. Essential conditions
    prescribe the tangential component E . t on every side.
    """

    slope: float = 20.0
    radius: float = 0.25
    nx: int = 2
    ny: int = 2
    triangles: bool = False

    kind = HCURL
    center = (0.5, 0.5)

    def _polar(self, x, y):
        dx = np.asarray(x, dtype=np.float64) - self.center[0]
        dy = np.asarray(y, dtype=np.float64) - self.center[1]
        r = np.hypot(dx, dy)
        phi = np.arctan(self.slope * (r - self.radius))
        dphi = self.slope / (1.0 + (self.slope * (r - self.radius)) ** 2)
        # phi'(r) / r, finite at the center
        q = np.divide(dphi, r, out=np.zeros_like(r), where=r > 0.0)
        return dx, dy, phi, q

    def exact(self, x, y):
        dx, dy, phi, _ = self._polar(x, y)
        return np.array([-dy * phi, dx * phi])

    def gradient(self, x, y):
        dx, dy, phi, q = self._polar(x, y)
        return np.array([
            [-dy * dx * q, -phi - dy * dy * q],
            [phi + dx * dx * q, dx * dy * q],
        ])

    def essential_bc_values(self, marker: int, x: float, y: float) -> float:
        tx, ty = TANGENTS[marker]
        ex, ey = self.exact(x, y)
        return float(ex * tx + ey * ty)

    def energy_norm(self) -> Norm:
        return HcurlNorm()

    def initial_mesh(self) -> Mesh:
        return rectangle_mesh(self.nx, self.ny, 0.0, 0.0, 1.0, 1.0, triangles=self.triangles)
