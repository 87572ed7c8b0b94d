"""
Retry ladder around the fit protocol.

A logical fit ("fit this toy under this hypothesis") is attempted with
Minuit strategy 0 first and escalated to strategies 1 and 2 until the
result is accepted. The same ladder serves the constrained fit, the
background-hypothesis fit and the free fit; only the acceptance predicate
differs.

Example usage:
    from functools import partial

    fit = partial(fit_once, engine, model, toy.data)
    constrained = run_retry_ladder(lambda s: fit(strategy=s))
    with model.state.released(model.poi):
        free = run_retry_ladder(
            lambda s: fit(strategy=s),
            accept=non_negative_test_statistic(constrained.chi2)
        )
"""

from typing import Callable, Mapping, Optional, Sequence

from ..utils.stats import is_sentinel
from .outcome import FitOutcome, describe_outcome

STRATEGIES = (0, 1, 2)

# Values closer than this to the lower edge count as sitting on it.
BOUNDARY_TOLERANCE = 1e-13
BOUNDARY_OFFSET = 0.67e-12


def accept_converged(outcome: FitOutcome) -> bool:
    """Default acceptance: converged with a finite minimum."""
    return outcome.converged


def non_negative_test_statistic(chi2_constrained: float) -> Callable[[FitOutcome], bool]:
    """Acceptance for free fits: converged and not below the constrained fit."""
    def accept(outcome: FitOutcome) -> bool:
        return outcome.converged and chi2_constrained - outcome.chi2 >= 0
    return accept


def run_retry_ladder(
    fit: Callable[[int], FitOutcome],
    accept: Callable[[FitOutcome], bool] = accept_converged,
    strategies: Sequence[int] = STRATEGIES,
    log: Optional[Callable[[str], None]] = None,
    label: str = "fit"
) -> FitOutcome:
    """Call ``fit(strategy)`` until ``accept`` holds or the strategies run out.

    Args:
        fit: Closure running one fit with the given strategy.
        accept: Acceptance predicate.
        strategies: Strategies to try, in order.
        log: Diagnostic sink for rejected attempts.
        label: Name of the fit in diagnostics.

    Returns:
        The accepted outcome, or the outcome of the last strategy.
    """
    if not strategies:
        raise ValueError("Retry ladder needs at least one strategy")
    outcome = None
    for strategy in strategies:
        outcome = fit(strategy)
        if accept(outcome):
            return outcome
        if log is not None:
            log(f"----> problem in {describe_outcome(outcome, label)}")
    return outcome


def recover_negative_test_statistic(
    fit: Callable[[], FitOutcome],
    state,
    poi: str,
    previous: FitOutcome,
    pars_after_constrained: Mapping[str, float],
    lower_edge: float = 0.0,
    log: Optional[Callable[[str], None]] = None
) -> FitOutcome:
    """Last attempt at a free fit that still has a negative test statistic.

    The free fit is repeated from the parameters found by the constrained
    fit, with the parameter of interest moved off the lower edge. The new
    fit replaces ``previous`` only if it converged, reached a strictly lower
    minimum and is not a failure sentinel. Otherwise the best fit value of
    ``previous`` is put back into the live state.

    Args:
        fit: Closure running one free fit (parameter of interest floating).
        state: Live ``ModelState``.
        poi: Name of the parameter of interest.
        previous: Outcome of the last free fit.
        pars_after_constrained: Parameter values after the constrained fit.
        lower_edge: Lower edge of the parameter of interest.
        log: Diagnostic sink.

    Returns:
        The outcome to keep.
    """
    state.set_values(pars_after_constrained)
    if state.value(poi) < lower_edge + BOUNDARY_TOLERANCE:
        state.set_value(poi, lower_edge + BOUNDARY_OFFSET)
    retry = fit()
    if retry.status == 0 and retry.chi2 < previous.chi2 and not is_sentinel(retry.chi2):
        if log is not None:
            log(f"+++++ > improvement found in extra fit: chi2 before: {previous.chi2:.6g} "
                f"after: {retry.chi2:.6g}")
        return retry
    if log is not None:
        log("+++++ > no improvement found, reset parameters to the last fit result")
    state.set_values(previous.values)
    return previous
