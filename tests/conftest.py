"""Shared fixtures: a small Gaussian model, a scripted fit engine and record factories."""

import math

import numpy as np
import pytest
from scipy import stats

from pluginscan.fit.engine import FitResult
from pluginscan.fit.model import ModelState, Parameter, ToyModel
from pluginscan.utils.config import ScanGrid
from pluginscan.utils.prob_scan import NuisanceSnapshot, ProbScanResult
from pluginscan.utils.record_store import RecordStore, ToyRecord


class GaussModel(ToyModel):
    """x ~ N(mu + b, 1) with b constrained by b_obs ~ N(b, 1)."""

    def __init__(self, observed=1.0, mu_max=10.0):
        state = ModelState([
            Parameter('mu', 0.0, 0.0, mu_max, ranges={'free': (0.0, mu_max), 'phys': (0.0, mu_max)}),
            Parameter('b', 1.0, -5.0, 5.0),
        ])
        super().__init__('gauss', 'mu', state, observed_data=np.array([observed]),
                         observed_global_observables={'b_obs': 1.0})

    def nll(self, values, data):
        x = float(np.asarray(data)[0])
        return 0.5 * (x - values['mu'] - values['b']) ** 2 + 0.5 * (values['b'] - self.global_observables['b_obs']) ** 2

    def generate_toys(self, rng):
        values = self.state.values()
        return np.array([rng.normal(values['mu'] + values['b'], 1.0)])

    def generate_global_observables(self, rng):
        return {'b_obs': float(rng.normal(self.state.value('b'), 1.0))}

    @property
    def has_bkg_model(self):
        return True

    def generate_bkg_toys(self, rng):
        return np.array([rng.normal(self.state.value('b'), 1.0)])


class ScriptedEngine:
    """Fit engine whose answers come from ``respond(model, data, strategy)``."""

    def __init__(self, respond):
        self.respond = respond
        self.calls = []

    def minimize(self, model, data, strategy):
        self.calls.append({
            'strategy': strategy,
            'poi_constant': model.state.is_constant(model.poi),
            'values': model.state.values(),
        })
        return self.respond(model, data, strategy)


def fit_result(model, min_nll, status=0, cov_quality=3, **values):
    """FitResult at the current state with some values replaced."""
    current = model.state.values()
    current.update(values)
    return FitResult(min_nll=min_nll, status=status, cov_quality=cov_quality, values=current)


@pytest.fixture
def gauss_model():
    return GaussModel()


@pytest.fixture
def scripted_engine():
    return ScriptedEngine


@pytest.fixture
def make_fit_result():
    return fit_result


@pytest.fixture
def grid():
    return ScanGrid(poi='mu', min_val=0.0, max_val=4.0, n_points=5)


@pytest.fixture
def prob_scan(grid):
    """Prior scan with a parabola in mu around 1.5."""
    snapshots = [
        NuisanceSnapshot(
            index=i,
            scanpoint=x,
            values={'mu': x, 'b': 1.0},
            chi2min=2.0 + (x - 1.5) ** 2,
            status=0,
            cov_quality=3
        )
        for i, x in enumerate(grid.values())
    ]
    return ProbScanResult(snapshots, chi2min_global=2.0, chi2min_bkg=2.0 + 1.5 ** 2)


@pytest.fixture
def make_record():
    """Factory of toy records with converged fits and sensible defaults."""
    def make(**kwargs):
        fields = dict(
            scanpoint=0.0, npoint=0, nrun=1, ntoy=0,
            chi2min=12.0, chi2min_global=10.0, chi2min_bkg=11.0,
            status_scan_data=0, cov_qual_scan_data=3, generic_prob_pvalue=0.157,
            chi2min_toy=11.0, status_scan=0, cov_qual_scan=3,
            chi2min_bkg_toy=math.nan, status_scan_bkg=-99, cov_qual_scan_bkg=0,
            chi2min_global_toy=10.0, status_free=0, cov_qual_free=3, scanbest=1.0,
            chi2min_global_bkg_toy=math.nan, status_free_bkg=-99, scanbest_bkg=math.nan,
        )
        fields.update(kwargs)
        return ToyRecord(**fields)
    return make


# Observed test statistic per scan point of the synthetic scenario
SCENARIO_OBSERVED = (0.0, 1.0, 3.84, 6.0, 9.0)


@pytest.fixture
def scenario_grid():
    return ScanGrid(poi='mu', min_val=0.0, max_val=10.0, n_points=5)


@pytest.fixture
def scenario_table(scenario_grid, make_record):
    """1000 toys per point with q following chi2(1) exactly, background toys alike.

    The free fits find their best value on the scan point, so neither the
    one-sided clipping nor the upper limit convention changes any value.
    """
    n = 1000
    q = stats.chi2.ppf((np.arange(n) + 0.5) / n, 1)
    records = []
    for i, x in enumerate(scenario_grid.values()):
        for k in range(n):
            records.append(make_record(
                scanpoint=x, npoint=i, ntoy=k,
                chi2min=10.0 + SCENARIO_OBSERVED[i], chi2min_global=10.0, chi2min_bkg=10.0,
                chi2min_toy=10.0 + q[k], chi2min_global_toy=10.0, scanbest=x,
                chi2min_bkg_toy=10.0 + q[k], status_scan_bkg=0,
                chi2min_global_bkg_toy=10.0, status_free_bkg=0, scanbest_bkg=x,
            ))
    return RecordStore(records).to_arrays()
