import numpy as np
import pytest

from pluginscan.analysis.aggregator import aggregate_runs
from pluginscan.fit.engine import FitResult, MinuitFitEngine
from pluginscan.scan.runner import PluginScanRunner
from pluginscan.utils.config import ModelConfig, PluginScanConfig, RunSelection, ScanGrid
from pluginscan.utils.errors import PreconditionError
from pluginscan.utils.prob_scan import run_prob_scan
from pluginscan.utils.record_store import read_runs


def positive_q(model, data, strategy):
    values = model.state.values()
    if model.state.is_constant(model.poi):
        return FitResult(1.0, 0, 3, values)
    values['mu'] = 2.5
    return FitResult(0.5, 0, 3, values)


@pytest.fixture
def config(tmp_path, grid):
    return PluginScanConfig(
        name='gauss',
        scan=grid,
        n_toys=3,
        seed=5,
        output_dir=str(tmp_path / 'root'),
        plots_dir=str(tmp_path / 'plots'),
    )


def test_run_writes_all_points(config, gauss_model, scripted_engine, prob_scan):
    runner = PluginScanRunner(config.with_overrides(nrun=2), model=gauss_model,
                              engine=scripted_engine(positive_q), prob_scan=prob_scan)
    store = runner.run()
    assert len(store) == 3 * config.scan.n_points

    table = read_runs([config.run_file(2)])
    np.testing.assert_array_equal(np.unique(table['npoint']), np.arange(config.scan.n_points))
    assert np.all(table['nrun'] == 2)
    # free fits land at 2.5, so points above it are clipped
    np.testing.assert_allclose(table['q'], np.where(table['scanpoint'] <= 2.5, 1.0, 0.0))


def test_run_restores_observed_data(config, gauss_model, scripted_engine, prob_scan):
    runner = PluginScanRunner(config, model=gauss_model, engine=scripted_engine(positive_q), prob_scan=prob_scan)
    runner.run(write=False)
    assert gauss_model.data is gauss_model.observed_data
    assert gauss_model.global_observables == {'b_obs': 1.0}


def test_background_toys_generated_once(config, gauss_model, scripted_engine, prob_scan, monkeypatch):
    generated = []
    original = gauss_model.generate_bkg_toys

    def counting(rng):
        generated.append(gauss_model.state.values())
        return original(rng)

    monkeypatch.setattr(gauss_model, "generate_bkg_toys", counting)
    engine = scripted_engine(positive_q)
    runner = PluginScanRunner(config, model=gauss_model, engine=engine, prob_scan=prob_scan)
    store = runner.run(write=False)

    assert len(generated) == config.n_toys
    assert all(values == {"mu": 0.0, "b": 1.0} for values in generated)
    assert all(r.status_scan_bkg == 0 for r in store)
    assert len(engine.calls) == config.scan.n_points * config.n_toys * 4


def test_two_dimensional_scan_rejected(config, gauss_model, prob_scan):
    runner = PluginScanRunner(config.with_overrides(scan_var2='b'), model=gauss_model, prob_scan=prob_scan)
    with pytest.raises(PreconditionError, match='Two dimensional'):
        runner.init_scan()


def test_unknown_scan_parameter(config, gauss_model, prob_scan):
    runner = PluginScanRunner(config.with_overrides(scan=ScanGrid('sigma', 0.0, 4.0, 5)),
                              model=gauss_model, prob_scan=prob_scan)
    with pytest.raises(PreconditionError, match='No such scan parameter'):
        runner.init_scan()


def test_cls_grid_must_start_at_background_value(config, gauss_model, prob_scan):
    runner = PluginScanRunner(config.with_overrides(bkg_poi_value=1.0), model=gauss_model, prob_scan=prob_scan)
    with pytest.raises(PreconditionError, match='first scan point'):
        runner.init_scan()

    runner = PluginScanRunner(config.with_overrides(bkg_poi_value=1.0, bkg_toys=False),
                              model=gauss_model, prob_scan=prob_scan)
    runner.init_scan()
    assert not runner.bkg_enabled


def test_prior_scan_grid_mismatch(config, gauss_model, prob_scan):
    runner = PluginScanRunner(config.with_overrides(scan=ScanGrid('mu', 0.0, 4.0, 9)),
                              model=gauss_model, prob_scan=prob_scan)
    with pytest.raises(PreconditionError, match='does not match'):
        runner.init_scan()


def test_missing_prior_scan_file(config, gauss_model):
    runner = PluginScanRunner(config, model=gauss_model)
    with pytest.raises(PreconditionError, match='not found'):
        runner.init_scan()


def test_init_activates_fit_range(config, gauss_model, prob_scan):
    gauss_model.state.set_limits('mu', 0.0, 1.0)
    runner = PluginScanRunner(config, model=gauss_model, prob_scan=prob_scan)
    runner.init_scan()
    assert gauss_model.state.limits('mu') == (0.0, 10.0)


def test_seeded_runs_are_reproducible(config, gauss_model):
    runner = PluginScanRunner(config, model=gauss_model)
    a = runner.make_rng(3).normal(size=4)
    b = runner.make_rng(3).normal(size=4)
    c = runner.make_rng(4).normal(size=4)
    np.testing.assert_array_equal(a, b)
    assert not np.array_equal(a, c)


def test_counting_pipeline(tmp_path):
    """Prior scan, two toy runs and the aggregation of a small counting model."""
    grid = ScanGrid('mu', 0.0, 2.0, 3)
    config = PluginScanConfig(
        name='counting',
        scan=grid,
        model=ModelConfig(options={'signal': [10.0], 'background': [50.0], 'observed': [55]}),
        n_toys=4,
        seed=3,
        output_dir=str(tmp_path / 'root'),
        plots_dir=str(tmp_path / 'plots'),
        runs=RunSelection(run_min=1, run_max=2),
    )
    engine = MinuitFitEngine()
    run_prob_scan(config.model.build(), engine, grid).write(config.prob_scan_path())

    for nrun in (1, 2):
        PluginScanRunner(config.with_overrides(nrun=nrun), engine=engine).run()

    result = aggregate_runs(config)
    assert np.all(result.n_tot == 2 * config.n_toys)
    assert np.all(result.n_better <= result.n_all)
    assert np.all(result.n_all <= result.n_tot)
    assert np.all((result.pvalue >= 0) & (result.pvalue <= 1))
    assert np.all(result.cls_freq <= 1)
