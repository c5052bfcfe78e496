import numpy as np
from typing import Any, Dict, Optional

import arviz as az
import pandas as pd
from dataclasses import dataclass, asdict

from .samplers import Sampler, ProbitSampler


def _collect_series(model: Any, X: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Post-burn-in series of the chain, shape (1, n_draws, k).

    Without X the series is sigma (k == 1); with X it is f(X) per row.
    """
    if X is None:
        vals = [model.trace[k].sigma for k in model.range_post]
        return np.asarray(vals, dtype=float)[None, :, None]

    X_arr = np.asarray(X, dtype=np.float64)
    if X_arr.ndim == 1:
        X_arr = X_arr.reshape(1, -1)
    vals = [np.asarray(model.predict_trace(int(k), X_arr, backtransform=True)).reshape(-1)
            for k in model.range_post]
    return np.stack(vals, axis=0)[None, :, :]

@dataclass
class MoveAcceptance:
    selected: int
    proposed: int
    accepted: int

    @property
    def acc_rate(self) -> float:
        return self.accepted / self.proposed if self.proposed > 0 else np.nan

    @property
    def prop_rate(self) -> float:
        return self.proposed / self.selected if self.selected > 0 else np.nan

    def __post_init__(self):
        self.selected = int(self.selected)
        self.proposed = int(self.proposed)
        self.accepted = int(self.accepted)

    def combine(self, other: 'MoveAcceptance') -> 'MoveAcceptance':
        return MoveAcceptance(
            selected=self.selected + other.selected,
            proposed=self.proposed + other.proposed,
            accepted=self.accepted + other.accepted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "acc_rate": float(self.acc_rate), "prop_rate": float(self.prop_rate)}

def _collect_move_acceptance(sampler: Sampler) -> Dict[str, MoveAcceptance]:
    """
    Per-move selection/proposal/acceptance counts, plus an 'overall' entry.
    """
    result: Dict[str, MoveAcceptance] = {}
    overall = MoveAcceptance(0, 0, 0)
    for mv in sorted(sampler.move_selected_counts):
        stats = MoveAcceptance(
            selected=sampler.move_selected_counts.get(mv, 0),
            proposed=sampler.move_success_counts.get(mv, 0),
            accepted=sampler.move_accepted_counts.get(mv, 0),
        )
        result[mv] = stats
        overall = overall.combine(stats)
    result["overall"] = overall
    return result

def compute_diagnostics(model: Any, X: Optional[np.ndarray] = None) -> Dict[str, Any]:
    """
    Compute MCMC diagnostics for a fitted soft BART model.

    Metrics:
    - R-hat (rank normalized, split) via ArviZ
    - bulk ESS via ArviZ
    - MCSE (mean MC standard error)
    - Move acceptance statistics from the sampler

    Parameters
    ----------
    model : Any
        A fitted `DefaultSoftBART`-like object.
    X : np.ndarray, optional
        If provided, compute diagnostics for f(X) evaluated at each draw (per-row
        diagnostics) instead of sigma. Probit models always use f(X), on the
        training rows when X is omitted.

    Returns
    -------
    dict
        {
          'meta': { 'n_chains', 'n_draws' },
          'metrics': pandas.DataFrame with columns [...metrics...],
          'acceptance': { per-move stats and 'overall' }
        }
    """
    if not getattr(model, "is_fitted", False):
        raise ValueError("Model must be fitted before diagnostics.")
    if len(model.range_post) == 0:
        raise ValueError("Empty trace; run sampling first.")

    if X is None and isinstance(model.sampler, ProbitSampler):
        # sigma is fixed at one in probit mode; use f on the training rows
        X = model.data.X

    series = _collect_series(model, X)
    n_chains, n_draws = series.shape[0], series.shape[1]

    var_name = "sigma" if X is None else "f_x"
    idata = az.from_dict(posterior={var_name: series})

    rhat_arr = np.asarray(az.rhat(idata, method="rank")[var_name].values)
    ess_arr = np.asarray(az.ess(idata, method="bulk")[var_name].values)
    mcse_arr = np.asarray(az.mcse(idata)[var_name].values)

    flat = series.reshape(-1, series.shape[-1])
    sd_vec = np.std(flat, axis=0, ddof=1)
    with np.errstate(invalid='ignore', divide='ignore'):
        mcse_over_sd_vec = np.where(sd_vec > 0, mcse_arr / sd_vec, np.nan)

    metrics_df = pd.DataFrame({
        "rhat": rhat_arr.reshape(-1),
        "ess_bulk": ess_arr.reshape(-1),
        "mcse_mean": mcse_arr.reshape(-1),
        "mcse_over_sd": mcse_over_sd_vec.reshape(-1),
    })

    return {
        "meta": {
            "n_chains": int(n_chains),
            "n_draws": int(n_draws)
        },
        "metrics": metrics_df,
        "acceptance": _collect_move_acceptance(model.sampler),
    }

__all__ = [
    "compute_diagnostics",
    "MoveAcceptance",
]
