"""Norms used for error estimation and projection-based candidate scoring.

A norm is a sum of weighted squared terms. ``terms`` evaluates them for a
given function; since they are linear, ``shape_terms`` evaluates the same
terms for a set of shape functions, so projections minimise exactly the
norm the error is measured in.
"""

from __future__ import annotations

from typing import Callable

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError


class Norm:
    """Weighted H1-type norm: mass * |u|^2 + stiff * |grad u|^2 per component."""

    name = "h1"

    def weights(self, x, y) -> tuple[NDArray, NDArray]:
        one = np.ones_like(np.asarray(x, dtype=np.float64))
        return one, one

    @property
    def uses_gradients(self) -> bool:
        return True

    @property
    def has_mass(self) -> bool:
        return True

    def terms(self, vals, grads, x, y) -> list[tuple[NDArray, NDArray]]:
        mass, stiff = self.weights(x, y)
        out = []
        for c in range(vals.shape[0]):
            out.append((vals[c], mass))
            if self.uses_gradients:
                out.append((grads[c, 0], stiff))
                out.append((grads[c, 1], stiff))
        return out

    def shape_terms(self, vals, grads, x, y) -> list[NDArray]:
        """Terms of each shape function, vals (nsh, ncomp, npts), grads (nsh, ncomp, 2, npts).

        Returns one (nsh, npts) array per term.
        """
        return [t for t, _ in self.terms(np.moveaxis(vals, 0, 1), np.moveaxis(grads, 0, 2), x, y)]

    def integrate(self, vals, grads, x, y, w) -> float:
        """Squared norm of a function sampled at quadrature points."""
        return float(sum(np.sum(w * wt * np.abs(t) ** 2) for t, wt in self.terms(vals, grads, x, y)))

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class H1Norm(Norm):
    name = "h1"


class L2Norm(Norm):
    name = "l2"

    @property
    def uses_gradients(self) -> bool:
        return False


class H1SemiNorm(Norm):
    name = "h1-semi"

    @property
    def has_mass(self) -> bool:
        return False

    def weights(self, x, y):
        one = np.ones_like(np.asarray(x, dtype=np.float64))
        return np.zeros_like(one), one


class EnergyNorm(Norm):
    """Norm induced by -div(a grad u) + c u: a |grad u|^2 + c u^2.

    Pass the same coefficient functions used for assembly.
    """

    name = "energy"

    def __init__(
        self,
        diffusion: Callable[[NDArray, NDArray], NDArray] | float = 1.0,
        reaction: Callable[[NDArray, NDArray], NDArray] | float = 0.0,
    ) -> None:
        self.diffusion = diffusion
        self.reaction = reaction

    @staticmethod
    def _eval(coef, x):
        if callable(coef):
            return coef
        return lambda xx, yy: np.full_like(np.asarray(xx, dtype=np.float64), float(coef))

    def weights(self, x, y):
        return self._eval(self.reaction, x)(x, y), self._eval(self.diffusion, x)(x, y)

    @property
    def has_mass(self) -> bool:
        return callable(self.reaction) or float(self.reaction) != 0.0


class HcurlNorm(Norm):
    """|u|^2 + (curl u)^2 for two-component fields."""

    name = "hcurl"

    def terms(self, vals, grads, x, y):
        one = np.ones_like(np.asarray(x, dtype=np.float64))
        curl = grads[1, 0] - grads[0, 1]
        return [(vals[0], one), (vals[1], one), (curl, one)]


NORMS: dict[str, type[Norm]] = {
    "h1": H1Norm,
    "l2": L2Norm,
    "h1-semi": H1SemiNorm,
    "energy": EnergyNorm,
    "hcurl": HcurlNorm,
}


def make_norm(name: str, **kwargs) -> Norm:
    try:
        return NORMS[name](**kwargs)
    except KeyError:
        raise ConfigurationError(f"Unknown norm '{name}', expected one of {sorted(NORMS)}") from None
