import numpy as np
import pytest

from pluginscan.analysis.bootstrap import BootstrapEstimator
from pluginscan.utils.errors import PreconditionError
from pluginscan.utils.record_store import RecordStore


def test_same_seed_same_pvalues(scenario_table):
    a = BootstrapEstimator(n_samples=200, seed=42).run(scenario_table, 2)
    b = BootstrapEstimator(n_samples=200, seed=42).run(scenario_table, 2)
    c = BootstrapEstimator(n_samples=200, seed=43).run(scenario_table, 2)
    np.testing.assert_array_equal(a.pvalues, b.pvalues)
    assert not np.array_equal(a.pvalues, c.pvalues)


def test_bootstrap_spread(scenario_table):
    result = BootstrapEstimator(n_samples=1000, seed=1).run(scenario_table, 2)
    assert len(result.pvalues) == 1000
    assert result.q_data == pytest.approx(3.84)
    assert result.scanpoint == 5.0
    assert result.n_toys == 1000 and result.n_failed == 0
    assert result.mean == pytest.approx(0.05, abs=0.005)
    # binomial error of 50 out of 1000
    assert result.std == pytest.approx(np.sqrt(0.05 * 0.95 / 1000), rel=0.2)


def test_failed_toys_are_dropped(make_record):
    records = [make_record(chi2min_toy=13.0), make_record(chi2min_toy=10.5),
               make_record(status_free=1, chi2min_toy=30.0)]
    result = BootstrapEstimator(n_samples=50, seed=0).run(RecordStore(records).to_arrays(), 0)
    assert result.n_toys == 2
    assert result.n_failed == 1
    assert np.all((result.pvalues >= 0) & (result.pvalues <= 1))


def test_missing_point(scenario_table):
    with pytest.raises(PreconditionError, match='No toys'):
        BootstrapEstimator(n_samples=10).run(scenario_table, 7)


def test_no_valid_toys(make_record):
    table = RecordStore([make_record(status_scan=4)]).to_arrays()
    with pytest.raises(PreconditionError, match='No valid toys'):
        BootstrapEstimator(n_samples=10).run(table, 0)


def test_needs_samples():
    with pytest.raises(ValueError):
        BootstrapEstimator(n_samples=0)
