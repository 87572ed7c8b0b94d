"""
Fit layer - model state, fit protocol and retry ladder.

This module provides:
- ModelState / ToyModel: the shared parameter vector and the model interface
- FitOutcome: classified result of one fit
- MinuitFitEngine and fit_once: one call into the optimizer
- run_retry_ladder: strategy escalation around fit_once
"""

from .engine import FitResult, MinuitFitEngine, fit_once
from .ladder import STRATEGIES, recover_negative_test_statistic, run_retry_ladder
from .model import ModelState, Parameter, ToyModel
from .outcome import INVALID_STATUS, FitOutcome, OutcomeKind, describe_outcome

__all__ = [
    'FitResult', 'MinuitFitEngine', 'fit_once',
    'STRATEGIES', 'recover_negative_test_statistic', 'run_retry_ladder',
    'ModelState', 'Parameter', 'ToyModel',
    'INVALID_STATUS', 'FitOutcome', 'OutcomeKind', 'describe_outcome'
]
