import math
from collections import OrderedDict

import numpy as np
import pytest

from pluginscan.utils.config import PluginScanConfig, RunSelection, ScanGrid
from pluginscan.utils.errors import PreconditionError
from pluginscan.utils.record_store import (RecordStore, find_run_files, read_runs,
                                           write_pvalue_table)


def test_record_test_statistics(make_record):
    record = make_record(chi2min_toy=13.0, chi2min_global_toy=10.0, scanbest=2.0, scanpoint=1.0)
    assert record.raw_test_statistic == 3.0
    assert record.test_statistic == 3.0
    assert make_record(chi2min_toy=13.0, scanbest=0.5, scanpoint=1.0).test_statistic == 0.0
    assert record.observed_test_statistic == 2.0

    # background toys keep their value below the scan point and are zeroed above it
    bkg = make_record(chi2min_bkg_toy=12.0, chi2min_global_bkg_toy=11.0, scanbest_bkg=0.5, scanpoint=1.0)
    assert bkg.bkg_test_statistic == 1.0
    above = make_record(chi2min_bkg_toy=12.0, chi2min_global_bkg_toy=11.0, scanbest_bkg=1.5, scanpoint=1.0)
    assert above.bkg_test_statistic == 0.0
    assert math.isnan(make_record().bkg_test_statistic)


def test_to_arrays(make_record):
    store = RecordStore([
        make_record(ntoy=0, pars_scan={'mu': 1.0, 'b': 2.0}, pars_free={'mu': 1.5, 'b': 2.1}),
        make_record(ntoy=1, pars_scan={'mu': 1.0, 'b': 2.2}, pars_free={'mu': 0.5, 'b': 1.9}),
    ])
    arrays = store.to_arrays()
    assert arrays['ntoy'].dtype == np.int32
    assert arrays['chi2min_toy'].dtype == np.float64
    np.testing.assert_array_equal(arrays['scan_par_b'], [2.0, 2.2])
    np.testing.assert_array_equal(arrays['free_par_mu'], [1.5, 0.5])
    np.testing.assert_array_equal(arrays['q'], [1.0, 1.0])
    assert 'pars_scan' not in arrays


def test_parameter_names_do_not_shadow_record_fields(make_record):
    record = make_record(status_scan=0, cov_qual_free=3,
                         pars_scan={'status': 7.5, 'cov_qual': 2.0}, pars_free={'status': 8.5, 'cov_qual': 1.0})
    arrays = RecordStore([record]).to_arrays()
    np.testing.assert_array_equal(arrays['status_scan'], [0])
    np.testing.assert_array_equal(arrays['cov_qual_free'], [3])
    np.testing.assert_array_equal(arrays['scan_par_status'], [7.5])
    np.testing.assert_array_equal(arrays['free_par_cov_qual'], [1.0])


def test_write_and_read_back(tmp_path, make_record):
    store = RecordStore([make_record(ntoy=k, chi2min_toy=10.0 + k, pars_scan={'mu': 0.1 * k}, pars_free={'mu': k})
                         for k in range(5)])
    path = str(tmp_path / 'runs' / 'run1.root')
    store.write(path)

    table = read_runs([path])
    expected = store.to_arrays()
    assert set(table) == set(expected)
    for name, values in expected.items():
        np.testing.assert_array_equal(table[name], values)


def test_runs_are_chained(tmp_path, make_record):
    paths = []
    for nrun in (1, 2, 3):
        path = str(tmp_path / f'run{nrun}.root')
        RecordStore([make_record(nrun=nrun, ntoy=k) for k in range(nrun)]).write(path)
        paths.append(path)

    table = read_runs(paths, verbose=True)
    np.testing.assert_array_equal(table['nrun'], [1, 2, 2, 3, 3, 3])


def test_missing_files_are_fatal(tmp_path, make_record):
    path = str(tmp_path / 'run1.root')
    RecordStore([make_record()]).write(path)
    with pytest.raises(PreconditionError, match='not found'):
        read_runs([path, str(tmp_path / 'run2.root')])
    with pytest.raises(PreconditionError, match='No run files'):
        read_runs([])


def test_mismatched_columns_are_fatal(tmp_path, make_record):
    a, b = str(tmp_path / 'a.root'), str(tmp_path / 'b.root')
    RecordStore([make_record()]).write(a)
    RecordStore([make_record(pars_scan={'mu': 0.0}, pars_free={'mu': 1.0})]).write(b)
    with pytest.raises(PreconditionError, match='different columns'):
        read_runs([a, b])


def test_find_run_files():
    config = PluginScanConfig(name='a', scan=ScanGrid('mu', 0.0, 1.0, 2), output_dir='out',
                              runs=RunSelection(run_min=2, run_max=4))
    assert find_run_files(config) == [config.run_file(2), config.run_file(3), config.run_file(4)]

    explicit = config.with_overrides(runs=RunSelection(input_files=('x.root', 'y.root')))
    assert find_run_files(explicit) == ['x.root', 'y.root']

    empty = config.with_overrides(runs=RunSelection(run_min=3, run_max=2))
    with pytest.raises(PreconditionError, match='Empty run range'):
        find_run_files(empty)


class Curves:
    def table(self):
        return OrderedDict([('scanpoints', np.array([0.0, 0.5])), ('pvalue', np.array([1.0, 0.25]))])


def test_write_pvalue_table(tmp_path, capsys):
    path = tmp_path / 'out' / 'cls_mu.txt'
    write_pvalue_table(Curves(), str(path))
    lines = path.read_text().splitlines()
    assert lines == ['scanpoints\tpvalue', '0\t1', '0.5\t0.25']
    assert "Wrote 2 points" in capsys.readouterr().out
