#!/usr/bin/env python3
"""
Bootstrap of the toy p-value at one scan point.

The valid toys of a scan point are resampled with replacement; each sample
gives one p-value, and the spread of these p-values estimates the Monte
Carlo uncertainty of the plugin p-value itself.

Example usage:
    from pluginscan.analysis.bootstrap import BootstrapEstimator

    result = BootstrapEstimator(n_samples=1000, seed=42).run(table, npoint=3)
    print(f"p = {result.mean:.4f} +/- {result.std:.4f}")
"""

import argparse
import sys
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from ..plotting.control_plots import plot_bootstrap
from ..utils.config import PluginScanConfig
from ..utils.errors import PluginScanError, PreconditionError
from ..utils.record_store import find_run_files, read_runs
from ..utils.stats import SENTINEL_CHI2, clip_test_statistic


@dataclass
class BootstrapResult:
    """Resampled p-values at one scan point."""
    npoint: int
    scanpoint: float
    pvalues: np.ndarray
    q_data: float
    n_toys: int
    n_failed: int

    @property
    def mean(self) -> float:
        return float(np.mean(self.pvalues))

    @property
    def std(self) -> float:
        return float(np.std(self.pvalues))


class BootstrapEstimator:
    """
    Resample the toys of one scan point.

    Args:
        n_samples: Number of bootstrap samples.
        seed: Random seed. The same seed on the same table reproduces the
            p-values exactly.
        verbose: Print a summary.
    """

    def __init__(self, n_samples: int = 1000, seed: Optional[int] = None, verbose: bool = False):
        if n_samples < 1:
            raise ValueError(f"Need at least one bootstrap sample, got {n_samples}")
        self.n_samples = n_samples
        self.seed = seed
        self.verbose = verbose

    def _log(self, msg: str):
        """Print message if verbose."""
        if self.verbose:
            print(msg)

    def run(self, table: Dict[str, np.ndarray], npoint: int) -> BootstrapResult:
        """Bootstrap the p-value at grid index ``npoint``.

        The observed test statistic is taken from the first record of the
        point. Each sample draws as many toys as there are valid ones.

        Raises:
            PreconditionError: If the point has no records or no valid toys.
        """
        in_point = np.asarray(table['npoint']) == npoint
        if not in_point.any():
            raise PreconditionError(f"No toys at scan point index {npoint}")

        chi2_toy = np.asarray(table['chi2min_toy'], dtype=float)[in_point]
        chi2_free = np.asarray(table['chi2min_global_toy'], dtype=float)[in_point]
        with np.errstate(invalid='ignore'):
            valid = ((np.asarray(table['status_scan'])[in_point] == 0)
                     & (np.asarray(table['status_free'])[in_point] == 0)
                     & (np.abs(chi2_toy) < SENTINEL_CHI2) & (np.abs(chi2_free) < SENTINEL_CHI2))
        scanpoint = np.asarray(table['scanpoint'], dtype=float)[in_point]
        q = clip_test_statistic(chi2_toy - chi2_free, np.asarray(table['scanbest'])[in_point], scanpoint)

        q_data = float(np.asarray(table['chi2min'])[in_point][0] - np.asarray(table['chi2min_global'])[in_point][0])
        valid_q = np.asarray(q)[valid]
        n_valid = len(valid_q)
        if n_valid == 0:
            raise PreconditionError(f"No valid toys at scan point index {npoint}")

        rng = np.random.default_rng(self.seed)
        indices = rng.integers(0, n_valid, size=(self.n_samples, n_valid))
        pvalues = np.count_nonzero(valid_q[indices] > q_data, axis=1) / n_valid

        result = BootstrapResult(
            npoint=npoint,
            scanpoint=float(scanpoint[0]),
            pvalues=pvalues,
            q_data=q_data,
            n_toys=n_valid,
            n_failed=int(np.count_nonzero(~valid))
        )
        self._log(f"Bootstrap at point {npoint} ({result.scanpoint:.6g}): {self.n_samples} samples "
                  f"of {n_valid} toys ({result.n_failed} failed), q_data={q_data:.4g}")
        self._log(f"p = {result.mean:.6g} +/- {result.std:.6g}")
        return result


def main():
    """CLI interface for the bootstrap of the plugin p-value."""
    parser = argparse.ArgumentParser(
        description="Bootstrap the plugin p-value at one scan point."
    )
    parser.add_argument('--config', required=True, help='YAML configuration file')
    parser.add_argument('--point', type=int, help='Grid index of the scan point')
    parser.add_argument('--nsamples', type=int, help='Number of bootstrap samples')
    parser.add_argument('--seed', type=int, help='Random seed')
    parser.add_argument('--files', nargs='+', help='Explicit run files')
    parser.add_argument('--plot', action='store_true', help='Draw the bootstrap distribution')
    parser.add_argument('-v', '--verbose', action='store_true', default=None, help='Print progress')

    args = parser.parse_args()

    try:
        config = PluginScanConfig.from_yaml(args.config).with_overrides(
            bootstrap_point=args.point,
            n_bootstrap=args.nsamples,
            seed=args.seed,
            verbose=args.verbose
        )
        files = args.files if args.files else find_run_files(config)
        table = read_runs(files, verbose=config.verbose)
        estimator = BootstrapEstimator(config.n_bootstrap, seed=config.seed, verbose=True)
        result = estimator.run(table, config.bootstrap_point)
        if args.plot:
            plot_bootstrap(result, config.plot_path(f"bootstrap_point{config.bootstrap_point}"))
    except PluginScanError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
