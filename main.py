"""
hp-adaptivity - entry point for running a benchmark problem.

Usage:
    python main.py
    python main.py problem=layer adapt.strategy=1 adapt.threshold=0.2
    python main.py adapt.adapt_type=1 adapt.iso_only=true mlflow.enabled=false
    python main.py -m problem.nx=2,4 adapt.conv_exp=0.5,1.0
"""

import logging
import os
from pathlib import Path

import hydra
import mlflow
from dotenv import load_dotenv
from hydra.utils import instantiate
from omegaconf import DictConfig, OmegaConf

from hpfem import (
    AdaptParameters,
    ProjectionSolver,
    Space,
    exact_error,
    make_norm,
    run_adaptivity,
)
from hpfem.plotting import ConvergenceObserver, save_figure, plot_convergence, setup_style

load_dotenv()

log = logging.getLogger(__name__)


def setup_mlflow(cfg: DictConfig) -> str:
    """Setup MLflow tracking and return experiment name."""
    tracking_uri = cfg.mlflow.get("tracking_uri", "./mlruns")
    os.environ["MLFLOW_TRACKING_URI"] = str(tracking_uri)
    mlflow.set_tracking_uri(tracking_uri)

    experiment_name = cfg.experiment_name
    try:
        mlflow.set_experiment(experiment_name)
    except Exception as exc:
        experiment_name = f"{experiment_name}-restored"
        log.warning(f"MLflow set_experiment failed ({exc}); using '{experiment_name}'")
        mlflow.set_experiment(experiment_name)
    return experiment_name


def build(cfg: DictConfig):
    """Instantiate problem, initial space, solver and parameters from the config."""
    problem = instantiate(cfg.problem, _convert_="partial")
    mesh = problem.initial_mesh()
    for marker, levels in cfg.mesh.get("refine_towards_boundary", {}).items():
        mesh.refine_towards_boundary(int(marker), int(levels))
    for _ in range(cfg.mesh.get("init_ref_num", 0)):
        mesh.refine_all_elements()

    space = Space(mesh, problem.kind, bc_types=problem.bc_types,
                  essential_bc_values=problem.essential_bc_values, order=cfg.p_init)
    space.assign_dofs()

    if cfg.norm == "energy":
        norm = problem.energy_norm()
    else:
        norm = make_norm(cfg.norm)
    params = AdaptParameters.from_config(OmegaConf.to_container(cfg.adapt, resolve=True))
    return problem, space, ProjectionSolver(problem, norm), params, norm


def run(cfg: DictConfig, output_dir: Path):
    problem, space, solver, params, norm = build(cfg)
    log.info(f"Problem: {type(problem).__name__}, initial DOFs: {space.get_num_dofs()}")

    observer = ConvergenceObserver(output_dir / "figures", every=cfg.plot_every) \
        if cfg.plot_every > 0 else None
    result = run_adaptivity(
        space,
        solver,
        params,
        norm,
        exact=lambda s: exact_error(s, problem.exact, problem.gradient, norm),
        observer=observer,
    )

    stats = result.stats
    stats.to_csv(output_dir / "convergence.csv", index=False)
    if observer is not None:
        observer.finalize()
    else:
        setup_style()
        save_figure(plot_convergence(stats), output_dir / "convergence.png")
    return params, result


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> float:
    """Main entry point.

    Returns
    -------
    float
        Final error estimate in percent (objective for sweeps).
    """
    output_dir = Path(hydra.core.hydra_config.HydraConfig.get().runtime.output_dir)
    if not cfg.mlflow.enabled:
        _, result = run(cfg, output_dir)
        return result.final_error

    log.info(f"MLflow experiment: {setup_mlflow(cfg)}")
    with mlflow.start_run(run_name=cfg.get("run_name")):
        mlflow.log_dict(OmegaConf.to_container(cfg), "config.yaml")
        params, result = run(cfg, output_dir)
        mlflow.log_params(params.to_mlflow())
        for rec in result.steps:
            mlflow.log_metrics(
                {"ndof": rec.ndof, "err_est": rec.err_est, "cpu_time": rec.cpu_time,
                 **({"err_exact": rec.err_exact} if rec.err_exact is not None else {})},
                step=rec.iteration,
            )
        mlflow.log_metrics({"converged": int(result.converged), "steps": len(result.steps)})
        mlflow.log_artifact(str(output_dir / "convergence.csv"))
    log.info(f"Done: {len(result.steps)} steps, converged={result.converged}")
    return result.final_error


if __name__ == "__main__":
    main()
