#!/usr/bin/env python3
"""
Aggregation of plugin toys into p-value and CLs curves.

The toy records of all runs are chained into one column table and counted
per scan point (the ``npoint`` grid index of each record):

- n_all: valid toys (both fits converged with a finite minimum)
- n_better: valid toys with a test statistic at least the observed one
- n_better_cls: same, against the background hypothesis minimum
- n_background: valid toys with a negative raw test statistic
- n_gof: valid, physical toys with a free fit minimum above the data one

From these the toy p-value (CLsb), CLs, the expected CLs band, the
frequentist CLs of the data and the goodness of fit are derived.

Example usage:
    from pluginscan.analysis.aggregator import PluginAggregator
    from pluginscan.utils.record_store import find_run_files, read_runs

    table = read_runs(find_run_files(config))
    result = PluginAggregator(config.scan).aggregate(table)
    print(result.pvalue)
"""

import argparse
import sys
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from ..plotting.control_plots import make_control_plots
from ..utils.config import PluginScanConfig, RunSelection, ScanGrid
from ..utils.errors import PluginScanError, PreconditionError
from ..utils.record_store import find_run_files, read_runs, write_pvalue_table
from ..utils.stats import (SENTINEL_CHI2, binomial_error, clip_test_statistic, p_value_test_statistic,
                           upper_limit_test_statistic)
from .cls import cls_freq, data_clb, expected_cls_band


@dataclass
class PluginScanResult:
    """
    Per scan point curves of an aggregated plugin scan.

    All arrays have one entry per grid index. Bins without valid toys keep
    0 in every derived curve.
    """
    scanpoints: np.ndarray
    n_tot: np.ndarray
    n_all: np.ndarray
    n_better: np.ndarray
    n_better_cls: np.ndarray
    n_failed: np.ndarray
    n_background: np.ndarray
    n_gof: np.ndarray
    pvalue: np.ndarray
    pvalue_err: np.ndarray
    cls: np.ndarray
    cls_err: np.ndarray
    cls_freq: np.ndarray
    cls_freq_err: np.ndarray
    cls_exp: np.ndarray
    cls_err1_up: np.ndarray
    cls_err1_dn: np.ndarray
    cls_err2_up: np.ndarray
    cls_err2_dn: np.ndarray
    prob_pvalue: np.ndarray
    frac_good: np.ndarray
    frac_background: np.ndarray
    best_index: int = 0
    gof: float = 0.0
    gof_err: float = 0.0
    sb_samples: Dict[int, np.ndarray] = field(default_factory=dict)
    bkg_samples: Dict[int, np.ndarray] = field(default_factory=dict)
    observed: np.ndarray = None

    def table(self) -> 'OrderedDict[str, np.ndarray]':
        """Curves as ordered columns, for text export."""
        names = [
            'scanpoints', 'pvalue', 'pvalue_err', 'cls', 'cls_err', 'cls_freq', 'cls_freq_err',
            'cls_exp', 'cls_err1_up', 'cls_err1_dn', 'cls_err2_up', 'cls_err2_dn',
            'prob_pvalue', 'n_all', 'n_better', 'n_failed', 'frac_good', 'frac_background'
        ]
        return OrderedDict((name, getattr(self, name)) for name in names)


class PluginAggregator:
    """
    Count toys per scan point and derive the p-value curves.

    Args:
        grid: Scan grid the records were produced on.
        chi2min_global: Global minimum of the data. Taken from the records
            if not given.
        chi2min_bkg: Background hypothesis minimum of the data. Taken from
            the records if not given.
        verbose: Print the summary.
        debug: Print per point details.
    """

    def __init__(
        self,
        grid: ScanGrid,
        chi2min_global: Optional[float] = None,
        chi2min_bkg: Optional[float] = None,
        verbose: bool = True,
        debug: bool = False
    ):
        self.grid = grid
        self.chi2min_global = chi2min_global
        self.chi2min_bkg = chi2min_bkg
        self.verbose = verbose
        self.debug = debug

    def _log(self, msg: str):
        """Print message if verbose."""
        if self.verbose:
            print(msg)

    def _debug(self, msg: str):
        if self.debug:
            print(f"DEBUG: {msg}")

    def _bincount(self, npoint: np.ndarray, mask: np.ndarray) -> np.ndarray:
        return np.bincount(npoint[mask], minlength=self.grid.n_points)[:self.grid.n_points]

    def aggregate(self, table: Dict[str, np.ndarray]) -> PluginScanResult:
        """Aggregate a chained record table.

        Args:
            table: Column table as returned by ``read_runs``.

        Returns:
            PluginScanResult.

        Raises:
            PreconditionError: If the table is empty or refers to grid
                indices outside the scan grid.
        """
        n_points = self.grid.n_points
        npoint = np.asarray(table['npoint'], dtype=np.int64)
        n_entries = len(npoint)
        if n_entries == 0:
            raise PreconditionError("No toys to aggregate")
        if npoint.min() < 0 or npoint.max() >= n_points:
            raise PreconditionError(
                f"Toys refer to scan points [{npoint.min()}, {npoint.max()}] "
                f"outside a grid of {n_points} points"
            )

        chi2min_global = self.chi2min_global
        if chi2min_global is None:
            chi2min_global = float(table['chi2min_global'][0])
        chi2min_bkg = self.chi2min_bkg
        if chi2min_bkg is None:
            chi2min_bkg = float(table['chi2min_bkg'][0])
        if chi2min_bkg < chi2min_global:
            chi2min_bkg = chi2min_global

        scanpoint = np.asarray(table['scanpoint'], dtype=float)
        chi2min = np.asarray(table['chi2min'], dtype=float)
        chi2_toy = np.asarray(table['chi2min_toy'], dtype=float)
        chi2_free = np.asarray(table['chi2min_global_toy'], dtype=float)

        with np.errstate(invalid='ignore'):
            valid = ((table['status_scan'] == 0) & (table['status_free'] == 0)
                     & (np.abs(chi2_toy) < SENTINEL_CHI2) & (np.abs(chi2_free) < SENTINEL_CHI2))
            q_raw = chi2_toy - chi2_free
            q = clip_test_statistic(q_raw, table['scanbest'], scanpoint)
            physical = q_raw >= 0
            better = valid & (q >= chi2min - chi2min_global)
            better_cls = valid & (q >= chi2min - chi2min_bkg)
            gof = valid & physical & (chi2_free > chi2min_global)

            chi2_bkg = np.asarray(table['chi2min_bkg_toy'], dtype=float)
            chi2_bkg_free = np.asarray(table['chi2min_global_bkg_toy'], dtype=float)
            valid_bkg = ((table['status_scan_bkg'] == 0) & (table['status_free_bkg'] == 0)
                         & np.isfinite(chi2_bkg) & np.isfinite(chi2_bkg_free)
                         & (np.abs(chi2_bkg) < SENTINEL_CHI2) & (np.abs(chi2_bkg_free) < SENTINEL_CHI2))
            # band samples of both hypotheses use the upper limit convention
            q_bkg = upper_limit_test_statistic(chi2_bkg - chi2_bkg_free, table['scanbest_bkg'], scanpoint)
            q_sb = upper_limit_test_statistic(q_raw, table['scanbest'], scanpoint)

        n_tot = self._bincount(npoint, np.ones(n_entries, dtype=bool))
        n_all = self._bincount(npoint, valid)
        n_better = self._bincount(npoint, better)
        n_better_cls = self._bincount(npoint, better_cls)
        n_failed = self._bincount(npoint, ~valid)
        n_background = self._bincount(npoint, valid & ~physical)
        n_physical = self._bincount(npoint, valid & physical)
        n_gof = self._bincount(npoint, gof)

        pvalue, pvalue_err = np.zeros(n_points), np.zeros(n_points)
        cls, cls_err = np.zeros(n_points), np.zeros(n_points)
        frac_good, frac_background = np.zeros(n_points), np.zeros(n_points)
        prob_pvalue = np.zeros(n_points)
        observed = np.zeros(n_points)

        filled = n_all > 0
        pvalue[filled] = n_better[filled] / n_all[filled]
        pvalue_err[filled] = binomial_error(pvalue[filled], n_all[filled])
        cls[filled] = n_better_cls[filled] / n_all[filled]
        cls_err[filled] = binomial_error(cls[filled], n_all[filled])
        frac_good[filled] = n_all[filled] / n_tot[filled]
        frac_background[filled] = n_background[filled] / n_all[filled]

        sb_samples, bkg_samples = {}, {}
        for i in range(n_points):
            in_bin = npoint == i
            if not in_bin.any():
                continue
            observed[i] = chi2min[in_bin][0] - chi2min_global
            if filled[i]:
                prob_pvalue[i] = p_value_test_statistic(observed[i])
            sb_samples[i] = q_sb[in_bin & valid]
            bkg_samples[i] = q_bkg[in_bin & valid_bkg]

        best_index = int(np.argmax(pvalue))

        cls_exp, err1_up, err1_dn, err2_up, err2_dn = (np.zeros(n_points) for _ in range(5))
        freq, freq_err = np.zeros(n_points), np.zeros(n_points)
        for i in range(n_points):
            if not filled[i] or len(bkg_samples.get(i, ())) == 0:
                continue
            band = expected_cls_band(bkg_samples[i], sb_samples[i])
            cls_exp[i], err1_up[i], err1_dn[i] = band.median, band.err1_up, band.err1_dn
            err2_up[i], err2_dn[i] = band.err2_up, band.err2_dn

            _, clb, clb_err = data_clb(pvalue[i], bkg_samples[i])
            freq[i], freq_err[i] = cls_freq(pvalue[i], pvalue_err[i], clb, clb_err, i <= best_index)

            self._debug(f"{self.grid.poi}={self.grid.coordinate(i):.6g}: quantiles {band.quantiles}, "
                        f"CLsb {band.clsb}, CLs {band.cls}")
            self._debug(f"{self.grid.poi}={self.grid.coordinate(i):.6g}: better={n_better[i]} "
                        f"p={pvalue[i]:.4g} CLs={cls[i]:.4g} CLsFreq={freq[i]:.4g}")

        gof_val, gof_err = 0.0, 0.0
        if n_physical[best_index] > 0:
            gof_val = n_gof[best_index] / n_physical[best_index]
            gof_err = float(binomial_error(gof_val, n_physical[best_index]))

        n_failed_total = int(np.count_nonzero(~valid))
        self._log(f"Average number of toys per scan point: {n_entries / n_points:.2f}")
        self._log(f"Average number of valid toys per scan point: {(n_entries - n_failed_total) / n_points:.2f}")
        self._log(f"Fraction of failed toys: {n_failed_total / n_entries * 100:.2f}%")
        self._log(f"Fraction of background toys: {n_background.sum() / n_entries * 100:.2f}%")
        self._log(f"Fit prob of best-fit point: ({gof_val * 100:.1f}+/-{gof_err * 100:.1f})%")

        return PluginScanResult(
            scanpoints=np.array(self.grid.values()),
            n_tot=n_tot,
            n_all=n_all,
            n_better=n_better,
            n_better_cls=n_better_cls,
            n_failed=n_failed,
            n_background=n_background,
            n_gof=n_gof,
            pvalue=pvalue,
            pvalue_err=pvalue_err,
            cls=cls,
            cls_err=cls_err,
            cls_freq=freq,
            cls_freq_err=freq_err,
            cls_exp=cls_exp,
            cls_err1_up=err1_up,
            cls_err1_dn=err1_dn,
            cls_err2_up=err2_up,
            cls_err2_dn=err2_dn,
            prob_pvalue=prob_pvalue,
            frac_good=frac_good,
            frac_background=frac_background,
            best_index=best_index,
            gof=float(gof_val),
            gof_err=gof_err,
            sb_samples=sb_samples,
            bkg_samples=bkg_samples,
            observed=observed
        )


def aggregate_runs(config: PluginScanConfig) -> PluginScanResult:
    """Read the run files selected by ``config`` and aggregate them."""
    table = read_runs(find_run_files(config), verbose=config.verbose)
    aggregator = PluginAggregator(config.scan, verbose=True, debug=config.debug)
    result = aggregator.aggregate(table)
    if config.control_plots:
        make_control_plots(result, config)
    return result


def main():
    """CLI interface for the aggregation of plugin toys."""
    parser = argparse.ArgumentParser(
        description="Aggregate plugin toy runs into p-value and CLs curves."
    )
    parser.add_argument('--config', required=True, help='YAML configuration file')
    parser.add_argument('--nrun-min', type=int, help='First run id')
    parser.add_argument('--nrun-max', type=int, help='Last run id')
    parser.add_argument('--files', nargs='+', help='Explicit run files (overrides the run range)')
    parser.add_argument('--out', help='Tab separated output file with the curves')
    parser.add_argument('--control-plots', dest='control_plots', action='store_true', default=None,
                        help='Draw control plots')
    parser.add_argument('--debug', action='store_true', default=None, help='Print debug output')
    parser.add_argument('-v', '--verbose', action='store_true', default=None, help='Print progress')

    args = parser.parse_args()

    try:
        config = PluginScanConfig.from_yaml(args.config)
        runs = config.runs
        runs = RunSelection(
            run_min=args.nrun_min if args.nrun_min is not None else runs.run_min,
            run_max=args.nrun_max if args.nrun_max is not None else runs.run_max,
            input_files=tuple(args.files) if args.files else runs.input_files
        )
        config = config.with_overrides(
            runs=runs,
            control_plots=args.control_plots,
            debug=args.debug,
            verbose=args.verbose
        )
        result = aggregate_runs(config)
        if args.out:
            write_pvalue_table(result, args.out)
    except PluginScanError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
