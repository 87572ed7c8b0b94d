import numpy as np
import pytest

from pluginscan.fit.engine import FitResult, MinuitFitEngine
from pluginscan.fit.model import ModelState, Parameter, ToyModel
from pluginscan.models.counting import CountingModel
from pluginscan.utils.config import ScanGrid
from pluginscan.utils.errors import PreconditionError
from pluginscan.utils.prob_scan import NuisanceSnapshot, ProbScanResult, run_prob_scan


def parabola(best=1.7, offset=0.5):
    """Engine answer: free fits land on ``best``, fixed fits pay a parabola."""
    def respond(model, data, strategy):
        values = model.state.values()
        if model.state.is_constant(model.poi):
            mu = values['mu']
        else:
            mu = best
            values['mu'] = best
        values['b'] = 1.0 + 0.1 * mu
        return FitResult(min_nll=offset + 0.5 * (mu - best) ** 2, status=0, cov_quality=3, values=values)
    return respond


def test_run_prob_scan(gauss_model, scripted_engine, grid):
    engine = scripted_engine(parabola())
    before = gauss_model.state.snapshot()
    result = run_prob_scan(gauss_model, engine, grid)

    assert len(result) == grid.n_points
    assert result.chi2min_global == pytest.approx(1.0)
    assert result.chi2min_bkg == pytest.approx(1.0 + 1.7 ** 2)
    np.testing.assert_allclose(result.scanpoints, grid.values())
    for snapshot, x in zip(result.snapshots, grid.values()):
        assert snapshot.chi2min == pytest.approx(1.0 + (x - 1.7) ** 2)
        assert snapshot.values['mu'] == x
        assert snapshot.values['b'] == pytest.approx(1.0 + 0.1 * x)
        assert snapshot.status == 0

    # free fit, background fit, then one fit per point
    assert [c['poi_constant'] for c in engine.calls] == [False] + [True] * (1 + grid.n_points)
    assert gauss_model.state.snapshot() == before


def test_run_prob_scan_retries_failed_points(gauss_model, scripted_engine, make_fit_result, grid):
    def respond(model, data, strategy):
        status = 0 if strategy == 2 else 4
        return make_fit_result(model, 1.0, status=status)
    engine = scripted_engine(respond)
    result = run_prob_scan(gauss_model, engine, grid)
    assert len(engine.calls) == 3 * (2 + grid.n_points)
    assert all(s.status == 0 for s in result.snapshots)


def test_run_prob_scan_needs_matching_poi(gauss_model, scripted_engine, make_fit_result):
    engine = scripted_engine(lambda m, d, s: make_fit_result(m, 0.0))
    with pytest.raises(PreconditionError):
        run_prob_scan(gauss_model, engine, ScanGrid('b', 0.0, 1.0, 2))


class SingleGaussModel(ToyModel):
    """x ~ N(mu, 1) without auxiliary measurements."""

    def __init__(self):
        state = ModelState([Parameter('mu', 0.0, 0.0, 5.0, ranges={'free': (0.0, 5.0)})])
        super().__init__('single', 'mu', state, observed_data=np.array([2.0]))

    def nll(self, values, data):
        return 0.5 * (float(np.asarray(data)[0]) - values['mu']) ** 2

    def generate_toys(self, rng):
        return np.array([rng.normal(self.state.value('mu'), 1.0)])

    def generate_global_observables(self, rng):
        return {}


def test_prob_scan_without_global_observables(scripted_engine):
    def respond(model, data, strategy):
        values = model.state.values()
        if not model.state.is_constant('mu'):
            values['mu'] = 2.0
        return FitResult(min_nll=0.5 * (values['mu'] - 2.0) ** 2, status=0, cov_quality=3, values=values)

    model = SingleGaussModel()
    assert model.has_snapshot(model.DATA_GLOBAL_OBS_SNAPSHOT)
    grid = ScanGrid('mu', 0.0, 4.0, 5)
    result = run_prob_scan(model, scripted_engine(respond), grid)

    assert result.chi2min_global == pytest.approx(0.0)
    assert result.chi2min_bkg == pytest.approx(4.0)
    np.testing.assert_allclose([s.chi2min for s in result.snapshots], [4.0, 1.0, 0.0, 1.0, 4.0])
    assert model.global_observables == {}


def test_result_validates_grid(prob_scan, grid):
    prob_scan.validate_grid(grid)
    with pytest.raises(PreconditionError, match='does not match'):
        prob_scan.validate_grid(ScanGrid('mu', 0.0, 4.0, 6))
    with pytest.raises(PreconditionError):
        prob_scan.validate_grid(ScanGrid('mu', 0.0, 5.0, 5))


def test_background_minimum_below_global_is_raised(capsys):
    snapshots = [NuisanceSnapshot(0, 0.0, {'mu': 0.0}, 3.0, 0, 3)]
    result = ProbScanResult(snapshots, chi2min_global=2.0, chi2min_bkg=1.5)
    assert result.chi2min_bkg == 2.0
    assert "Warning: background minimum" in capsys.readouterr().err


def test_empty_result_rejected():
    with pytest.raises(PreconditionError):
        ProbScanResult([], 0.0, 0.0)


def test_write_and_load(tmp_path, prob_scan, grid):
    path = tmp_path / 'sub' / 'probscan.root'
    prob_scan.write(str(path))
    loaded = ProbScanResult.load(str(path))
    loaded.validate_grid(grid)
    assert len(loaded) == len(prob_scan)
    assert loaded.chi2min_global == prob_scan.chi2min_global
    assert loaded.chi2min_bkg == prob_scan.chi2min_bkg
    for a, b in zip(loaded.snapshots, prob_scan.snapshots):
        assert a.index == b.index
        assert a.scanpoint == b.scanpoint
        assert dict(a.values) == dict(b.values)
        assert a.chi2min == b.chi2min
        assert (a.status, a.cov_quality) == (b.status, b.cov_quality)


def test_parameter_names_do_not_shadow_columns(tmp_path):
    snapshots = [NuisanceSnapshot(0, 0.0, {'mu': 0.0, 'status': 7.5, 'chi2min': -1.0}, 3.0, 0, 3)]
    path = str(tmp_path / 'probscan.root')
    ProbScanResult(snapshots, chi2min_global=2.0, chi2min_bkg=2.5).write(path)
    loaded = ProbScanResult.load(path)
    assert dict(loaded[0].values) == {'mu': 0.0, 'status': 7.5, 'chi2min': -1.0}
    assert loaded[0].chi2min == 3.0
    assert loaded[0].status == 0


def test_load_missing_file(tmp_path):
    with pytest.raises(PreconditionError, match='not found'):
        ProbScanResult.load(str(tmp_path / 'nope.root'))


def test_counting_model_prob_scan():
    model = CountingModel(signal=[10.0], background=[50.0], background_uncertainty=0.1, observed=[60])
    grid = ScanGrid('mu', 0.0, 3.0, 4)
    result = run_prob_scan(model, MinuitFitEngine(), grid)

    assert all(s.status == 0 for s in result.snapshots)
    chi2 = np.array([s.chi2min for s in result.snapshots])
    assert np.all(chi2 >= result.chi2min_global - 1e-3)
    assert int(np.argmin(chi2)) == 1
    assert chi2[1] == pytest.approx(result.chi2min_global, abs=1e-3)
    assert result.chi2min_bkg > result.chi2min_global
    # the background pulls up towards the data when mu is fixed at zero
    assert result.snapshots[0].values['b_0'] > 50.0
