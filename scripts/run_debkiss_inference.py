from __future__ import annotations

import os

# Avoid nested parallelism (BLAS/OpenMP) when chains run in a process pool.
os.environ.setdefault("OMP_NUM_THREADS", "1")
os.environ.setdefault("OPENBLAS_NUM_THREADS", "1")
os.environ.setdefault("MKL_NUM_THREADS", "1")
os.environ.setdefault("NUMEXPR_NUM_THREADS", "1")

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

from debkiss_infer.debkiss import DEBKissModel
from debkiss_infer.diagnostics import gelman_rubin, pool_traces, summarize_trace
from debkiss_infer.likelihoods import log_likelihood
from debkiss_infer.mcmc import MCMCConfig, run_with_config
from debkiss_infer.observations import load_observations, synthesize_observations
from debkiss_infer.posterior import TrajectoryEnsemble, predict
from debkiss_infer.reference import (
    SNAIL_BURNIN,
    SNAIL_ITERATIONS,
    SNAIL_THIN,
    SNAIL_TIME_HORIZON,
    reference_values,
    snail_parameters,
)
from debkiss_infer.report import (
    ReportPaths,
    band_table,
    format_table,
    frame_to_table,
    run_provenance,
    write_markdown_report,
)

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_SYNTHETIC_TIMES = "0,14,28,42,56,70,84,98,112,126,148"


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%SUTC")


def _jsonify(obj):
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.floating, np.integer)):
        return obj.item()
    if isinstance(obj, float) and not np.isfinite(obj):
        return None
    if isinstance(obj, dict):
        return {str(k): _jsonify(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonify(v) for v in obj]
    return obj


def _parse_times(text: str) -> np.ndarray:
    try:
        times = np.array([float(x) for x in text.split(",") if x.strip()], dtype=float)
    except ValueError as e:
        raise SystemExit(f"--synthetic-times: expected comma-separated numbers ({e}).") from e
    if times.size == 0:
        raise SystemExit("--synthetic-times: no times given.")
    return times


def _pooled_ensemble(ensembles: list[TrajectoryEnsemble]) -> TrajectoryEnsemble:
    first = ensembles[0]
    return TrajectoryEnsemble(
        times=first.times,
        states=np.concatenate([e.states for e in ensembles], axis=0),
        state_names=first.state_names,
        sample_indices=np.concatenate([e.sample_indices for e in ensembles]),
        samples=np.concatenate([e.samples for e in ensembles], axis=0),
        sample_names=first.sample_names,
        probs=first.probs,
    )


def main() -> int:
    ap = argparse.ArgumentParser(description="Bayesian calibration of the DEBKiss model for the pond snail.")
    ap.add_argument("--data", default=None, help="CSV with columns time,L,Egg (default: synthetic data).")
    ap.add_argument(
        "--synthetic-times",
        default=DEFAULT_SYNTHETIC_TIMES,
        help="Comma-separated observation times for synthetic data (ignored with --data).",
    )
    ap.add_argument("--synthetic-sdlog", type=float, default=0.1, help="Noise scale for synthetic data.")
    ap.add_argument("--iterations", type=int, default=SNAIL_ITERATIONS)
    ap.add_argument("--burnin", type=int, default=SNAIL_BURNIN)
    ap.add_argument("--thin", type=int, default=SNAIL_THIN)
    ap.add_argument("--chains", type=int, default=1)
    ap.add_argument("--procs", type=int, default=1, help="Worker processes for chains and prediction.")
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--solver-method", choices=["rk4", "euler", "lsoda"], default="rk4")
    ap.add_argument("--step-size", type=float, default=0.1)
    ap.add_argument("--time-horizon", type=float, default=SNAIL_TIME_HORIZON)
    ap.add_argument("--progress-every", type=int, default=500)
    ap.add_argument("--quiet", action="store_true", help="Suppress per-chain progress lines.")
    ap.add_argument("--out", default=None, help="Output directory (default: outputs/debkiss_<UTCSTAMP>).")
    args = ap.parse_args()

    out_dir = Path(args.out) if args.out else Path("outputs") / f"debkiss_{_utc_stamp()}"
    paths = ReportPaths(out_dir=out_dir.expanduser().resolve())
    paths.make_dirs()

    if args.data:
        obs = load_observations(args.data)
    else:
        obs = synthesize_observations(
            reference_values(),
            _parse_times(args.synthetic_times),
            sdlog_L=args.synthetic_sdlog,
            sdlog_E=args.synthetic_sdlog,
            seed=args.seed,
            method=args.solver_method,
            step_size=args.step_size,
        )
    horizon = max(float(args.time_horizon), float(np.max(obs.time)))
    config = MCMCConfig(
        iterations=args.iterations,
        time_horizon=horizon,
        burnin=args.burnin,
        thin=args.thin,
        solver_method=args.solver_method,
        step_size=args.step_size,
        progress=not args.quiet,
        progress_every=args.progress_every,
    )
    params = snail_parameters()

    print(f"[debkiss] n_obs={obs.n} source={obs.meta.get('source')} chains={args.chains} iters={config.iterations}", flush=True)
    traces = run_with_config(
        config,
        parameters=params,
        observations=obs,
        log_likelihood=log_likelihood,
        seed=args.seed,
        n_chains=args.chains,
        n_processes=args.procs,
    )
    for c, trace in enumerate(traces):
        trace.save_npz(paths.chain_npz(c))

    pooled = pool_traces(traces, burnin=config.burnin, thin=config.thin)
    pooled.to_csv(paths.posterior_csv, index=False)
    summaries = [summarize_trace(t, burnin=config.burnin, thin=config.thin) for t in traces]
    rhat = gelman_rubin(traces, burnin=config.burnin, thin=config.thin) if len(traces) > 1 else None

    grid = np.arange(0.0, horizon + 0.5, 1.0)
    model = DEBKissModel(time_grid=grid, method=config.solver_method, step_size=config.step_size)
    ensemble = _pooled_ensemble(
        [
            predict(
                t,
                thin=config.thin,
                burnin=config.burnin,
                parameters=params,
                time_grid=grid,
                forward_model=model,
                n_processes=args.procs,
            )
            for t in traces
        ]
    )
    values = params.as_values()
    L_band = ensemble.band("Lw")
    E_band = ensemble.egg_band(yBA=values["yBA"], WB0=values["WB0"])
    np.savez_compressed(
        paths.trajectories_npz,
        times=ensemble.times,
        states=ensemble.states,
        sample_indices=ensemble.sample_indices,
    )

    summary = {
        "provenance": run_provenance(repo_root=REPO_ROOT),
        "config": {
            "iterations": config.iterations,
            "burnin": config.burnin,
            "thin": config.thin,
            "chains": len(traces),
            "seed": int(args.seed),
            "solver_method": config.solver_method,
            "step_size": config.step_size,
            "time_horizon": horizon,
        },
        "data": obs.meta,
        "acceptance": [t.acceptance_rates for t in traces],
        "posterior": [s.to_dict(orient="index") for s in summaries],
        "rhat": rhat,
        "n_trajectories": int(ensemble.n_draws),
        "n_trajectories_finite": int(np.sum(ensemble.finite_mask)),
    }
    paths.summary_json.write_text(json.dumps(_jsonify(summary), indent=2, sort_keys=True) + "\n", encoding="utf-8")

    at = [t for t in (0.0, 28.0, 56.0, 84.0, 112.0, 140.0, horizon) if t <= horizon]
    md = [
        "# DEBKiss inference report",
        "",
        f"- command: `{summary['provenance']['command']}`",
        f"- git: `{summary['provenance']['git_sha']}` (dirty={summary['provenance']['git_dirty']})",
        f"- data: {obs.meta.get('source')} ({obs.n} observations)",
        f"- iterations={config.iterations} burnin={config.burnin} thin={config.thin} chains={len(traces)}",
        "",
    ]
    for c, s in enumerate(summaries):
        md += [f"## Chain {c} posterior summary", "", frame_to_table(s, index_name="parameter"), ""]
    if rhat is not None:
        md += ["## Gelman-Rubin R-hat", "", format_table([[k, v] for k, v in rhat.items()], ["parameter", "rhat"]), ""]
    md += [
        "## Trajectory bands",
        "",
        "Bands are 95% credible intervals of the mean trajectory; they exclude observation noise.",
        "",
        "### Length (Lw)",
        "",
        band_table(ensemble.times, L_band, at=at),
        "",
        "### Cumulative eggs",
        "",
        band_table(ensemble.times, E_band, at=at),
        "",
    ]
    write_markdown_report(paths=paths, markdown="\n".join(md))

    print(f"Wrote {paths.report_md}")
    print(f"Wrote {paths.summary_json}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
