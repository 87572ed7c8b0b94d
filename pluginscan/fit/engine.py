"""
Fit protocol and the Minuit fit engine.

``fit_once`` is the only place a fit engine is called from. It selects the
global observables, minimises, writes the optimum back into the live
parameter state and classifies the result.

Example usage:
    from pluginscan.fit.engine import MinuitFitEngine, fit_once

    engine = MinuitFitEngine()
    outcome = fit_once(engine, model, model.observed_data, strategy=1,
                       snapshot_name=model.DATA_GLOBAL_OBS_SNAPSHOT)
    print(outcome.chi2, outcome.status)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import iminuit
import numpy as np

from ..utils.errors import NullFitResultError, PreconditionError
from .model import ToyModel
from .outcome import FitOutcome


@dataclass
class FitResult:
    """Raw result returned by a fit engine."""
    min_nll: float
    status: int
    cov_quality: int
    values: Dict[str, float] = field(default_factory=dict)


class FitEngine(Protocol):
    """Anything that can minimise the NLL of a model on a dataset."""

    def minimize(self, model: ToyModel, data: Any, strategy: int) -> Optional[FitResult]:
        ...


class MinuitFitEngine:
    """
    Fit engine based on iminuit.

    Minimises twice the NLL over the floating parameters of the model, with
    the active limits of each parameter. Constant parameters stay at their
    current value.

    Status codes follow the Minuit2 conventions used by the records:
    0 valid minimum, 1 generic failure, 3 EDM above maximum, 4 call limit.
    Covariance quality: 0 not available, 1 approximate, 2 forced positive
    definite, 3 accurate.
    """

    def __init__(self, tolerance: Optional[float] = None, max_calls: Optional[int] = None,
                 run_hesse: bool = True):
        self.tolerance = tolerance
        self.max_calls = max_calls
        self.run_hesse = run_hesse

    def minimize(self, model: ToyModel, data: Any, strategy: int) -> Optional[FitResult]:
        state = model.state
        labels = state.names()
        floating = state.floating()
        current = state.values()

        if not floating:
            nll = model.nll(current, data)
            return FitResult(min_nll=float(nll), status=0, cov_quality=0, values=current)

        # constant parameters keep their value even outside their limits
        bounds = [
            (-np.inf, np.inf) if state.is_constant(name) else state.limits(name)
            for name in labels
        ]
        init = [float(np.clip(current[name], lo, hi)) for name, (lo, hi) in zip(labels, bounds)]

        def twice_nll(pars):
            return 2.0 * model.nll(dict(zip(labels, pars)), data)

        m = iminuit.Minuit(twice_nll, init, name=labels)
        m.fixed = [state.is_constant(name) for name in labels]
        m.limits = bounds
        m.errordef = iminuit.Minuit.LEAST_SQUARES
        m.strategy = strategy
        if self.tolerance is not None:
            m.tol = self.tolerance

        m.migrad(ncall=self.max_calls)
        if self.run_hesse and m.fmin.is_valid:
            m.hesse()

        fmin = m.fmin
        if fmin.is_valid:
            status = 0
        elif fmin.has_reached_call_limit:
            status = 4
        elif fmin.is_above_max_edm:
            status = 3
        else:
            status = 1

        if m.covariance is None:
            cov_quality = 0
        elif fmin.has_made_posdef_covar:
            cov_quality = 2
        elif fmin.has_accurate_covar:
            cov_quality = 3
        else:
            cov_quality = 1

        return FitResult(
            min_nll=float(m.fval) / 2.0,
            status=status,
            cov_quality=cov_quality,
            values={name: float(v) for name, v in zip(labels, m.values)}
        )


def fit_once(
    engine: FitEngine,
    model: ToyModel,
    data: Any,
    strategy: int = 0,
    snapshot_name: Optional[str] = ToyModel.TOY_GLOBAL_OBS_SNAPSHOT
) -> FitOutcome:
    """Run one fit with the current constancy configuration.

    Args:
        engine: Fit engine.
        model: Model whose live state is fitted and left at the optimum.
        data: Dataset to fit.
        strategy: Optimizer strategy (0, 1 or 2).
        snapshot_name: Global observable snapshot to load before fitting.
            None keeps the current global observables.

    Returns:
        Classified fit outcome.

    Raises:
        PreconditionError: If the snapshot does not exist.
        NullFitResultError: If the engine returns no result.
    """
    if snapshot_name is not None and not model.load_snapshot(snapshot_name):
        raise PreconditionError(f"Global observable snapshot '{snapshot_name}' not found in model {model.name}")
    result = engine.minimize(model, data, strategy)
    if result is None:
        raise NullFitResultError()
    model.state.set_values(result.values)
    return FitOutcome.from_result(
        min_nll=result.min_nll,
        status=result.status,
        cov_quality=result.cov_quality,
        strategy=strategy,
        values=result.values
    )
