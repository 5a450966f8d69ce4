"""Convergence graphs and polynomial-order maps."""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.collections import PolyCollection

from .datastructures import StepRecord
from .mesh import Mesh

log = logging.getLogger(__name__)

FIGURES_DIR = Path("figures")
STYLE = {
    "figure.figsize": (6.0, 4.5),
    "axes.grid": True,
    "grid.alpha": 0.3,
    "lines.markersize": 4,
    "savefig.dpi": 150,
}


def setup_style():
    """Apply shared matplotlib style."""
    plt.rcParams.update(STYLE)
    plt.rcParams.setdefault("savefig.bbox", "tight")


def save_figure(fig, filename: str | Path):
    """Save figure to the specified path."""
    filepath = Path(filename)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(filepath, bbox_inches="tight")
    log.info(f"Saved: {filepath}")
    return filepath


def plot_convergence(stats: pd.DataFrame, x: str = "ndof", ax=None):
    """Error estimate (and exact error if present) in percent, log-log."""
    if ax is None:
        _, ax = plt.subplots()
    ax.loglog(stats[x], stats["err_est"], "o-", label="error estimate")
    if "err_exact" in stats and stats["err_exact"].notna().any():
        ax.loglog(stats[x], stats["err_exact"], "s--", label="exact error")
    ax.set_xlabel("Degrees of freedom" if x == "ndof" else "CPU time [s]")
    ax.set_ylabel("Error [%]")
    ax.legend()
    return ax.figure


def plot_orders(mesh: Mesh, orders: dict, ax=None):
    """Active elements colored by polynomial order (max over directions)."""
    if ax is None:
        _, ax = plt.subplots()
    ids = sorted(orders)
    polys = [mesh.vertex_xy(eid) for eid in ids]
    values = np.array([max(orders[eid]) if isinstance(orders[eid], tuple) else orders[eid]
                       for eid in ids])
    coll = PolyCollection(polys, array=values, cmap="viridis", edgecolors="k", linewidths=0.3)
    coll.set_clim(values.min() - 0.5, values.max() + 0.5)
    ax.add_collection(coll)
    ax.autoscale_view()
    ax.set_aspect("equal")
    ax.figure.colorbar(coll, ax=ax, label="Polynomial order")
    return ax.figure


class ConvergenceObserver:
    """Observer for ``run_adaptivity`` that writes figures after each step.

    Only works on the snapshot it receives; it never touches the live mesh.
    """

    def __init__(self, output_dir: str | Path = FIGURES_DIR, every: int = 1) -> None:
        self.output_dir = Path(output_dir)
        self.every = every
        self.records: list[StepRecord] = []
        setup_style()

    @property
    def stats(self) -> pd.DataFrame:
        return pd.DataFrame([vars(r) for r in self.records])

    def __call__(self, record: StepRecord, mesh: Mesh, orders: dict) -> None:
        self.records.append(record)
        if record.iteration % self.every:
            return
        fig = plot_orders(mesh, orders)
        fig.axes[0].set_title(f"Step {record.iteration}: {record.ndof} DOFs")
        save_figure(fig, self.output_dir / f"orders_{record.iteration:03d}.png")
        plt.close(fig)

    def finalize(self) -> Path | None:
        if not self.records:
            return None
        fig = plot_convergence(self.stats)
        path = save_figure(fig, self.output_dir / "convergence.png")
        plt.close(fig)
        return path
