#!/usr/bin/env python3
"""
Prior ("prob") scan of the observed data.

The plugin scan generates its toys at the nuisance parameter values found
by a constrained fit to the real data at each scan point. This module runs
those fits once, writes them to a ROOT file, and reads them back for the
toy scan.

Example usage:
    from pluginscan.utils.prob_scan import ProbScanResult, run_prob_scan

    # Produce the prior scan
    result = run_prob_scan(model, MinuitFitEngine(), config.scan)
    result.write(config.prob_scan_path())

    # Load and check it against the current grid
    result = ProbScanResult.load(config.prob_scan_path())
    result.validate_grid(config.scan)
    snapshot = result[3]
"""

import argparse
import os
import sys
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, List, Mapping, Optional

import numpy as np
import uproot

from ..fit.engine import MinuitFitEngine, fit_once
from ..fit.ladder import run_retry_ladder
from .config import PluginScanConfig, ScanGrid
from .errors import PluginScanError, PreconditionError

TREE_NAME = "probscan"

# Branch prefix of the parameter values of the constrained data fits.
PAR_PREFIX = "scan_par_"


@dataclass(frozen=True)
class NuisanceSnapshot:
    """Parameter values of the constrained data fit at one scan point."""
    index: int
    scanpoint: float
    values: Mapping[str, float]
    chi2min: float
    status: int
    cov_quality: int


class ProbScanResult:
    """
    Constrained data fits along the scan grid.

    Attributes:
        snapshots: One snapshot per grid index.
        chi2min_global: Minimum of the free fit to data.
        chi2min_bkg: Minimum of the fit to data under the background hypothesis.
    """

    def __init__(
        self,
        snapshots: List[NuisanceSnapshot],
        chi2min_global: float,
        chi2min_bkg: float
    ):
        if not snapshots:
            raise PreconditionError("Prior scan result has no scan points")
        self.snapshots = list(snapshots)
        self.chi2min_global = float(chi2min_global)
        self.chi2min_bkg = float(chi2min_bkg)
        if self.chi2min_bkg < self.chi2min_global:
            print(
                f"Warning: background minimum ({self.chi2min_bkg:.6g}) is below the global "
                f"minimum ({self.chi2min_global:.6g}), using the global minimum",
                file=sys.stderr
            )
            self.chi2min_bkg = self.chi2min_global

    def __len__(self) -> int:
        return len(self.snapshots)

    def __getitem__(self, index: int) -> NuisanceSnapshot:
        return self.snapshots[index]

    @property
    def scanpoints(self) -> np.ndarray:
        return np.array([s.scanpoint for s in self.snapshots])

    def validate_grid(self, grid: ScanGrid) -> None:
        """Check that this result was made on ``grid``.

        Raises:
            PreconditionError: If the number of points or the endpoints differ.
        """
        first, last = self.snapshots[0].scanpoint, self.snapshots[-1].scanpoint
        if not grid.matches(len(self), first, last):
            raise PreconditionError(
                f"Prior scan grid ({len(self)} points, [{first}, {last}]) does not match "
                f"the scan grid ({grid.n_points} points, [{grid.min_val}, {grid.max_val}])"
            )

    def write(self, filepath: str) -> None:
        """Write the result as a ROOT TTree."""
        par_names = list(self.snapshots[0].values)
        n = len(self)
        branches = {
            'scanpoint': self.scanpoints.astype(np.float64),
            'chi2min': np.array([s.chi2min for s in self.snapshots], dtype=np.float64),
            'status_scan_data': np.array([s.status for s in self.snapshots], dtype=np.int32),
            'cov_qual_scan_data': np.array([s.cov_quality for s in self.snapshots], dtype=np.int32),
            'chi2min_global': np.full(n, self.chi2min_global, dtype=np.float64),
            'chi2min_bkg': np.full(n, self.chi2min_bkg, dtype=np.float64),
        }
        for name in par_names:
            branches[PAR_PREFIX + name] = np.array([s.values[name] for s in self.snapshots], dtype=np.float64)

        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with uproot.recreate(filepath) as f:
            tree = f.mktree(TREE_NAME, {k: v.dtype for k, v in branches.items()})
            tree.extend(branches)

    @classmethod
    def load(cls, filepath: str) -> 'ProbScanResult':
        """Read a result written by ``write``.

        Raises:
            PreconditionError: If the file or the tree is missing.
        """
        if not os.path.exists(filepath):
            raise PreconditionError(f"Prior scan file not found: {filepath}")
        with uproot.open(filepath) as f:
            if TREE_NAME not in f:
                raise PreconditionError(f"No '{TREE_NAME}' tree in {filepath}")
            arrays = f[TREE_NAME].arrays(library="np")

        par_names = [k[len(PAR_PREFIX):] for k in arrays if k.startswith(PAR_PREFIX)]
        snapshots = [
            NuisanceSnapshot(
                index=i,
                scanpoint=float(arrays['scanpoint'][i]),
                values=MappingProxyType({p: float(arrays[PAR_PREFIX + p][i]) for p in par_names}),
                chi2min=float(arrays['chi2min'][i]),
                status=int(arrays['status_scan_data'][i]),
                cov_quality=int(arrays['cov_qual_scan_data'][i])
            )
            for i in range(len(arrays['scanpoint']))
        ]
        if not snapshots:
            raise PreconditionError(f"Prior scan file {filepath} is empty")
        return cls(snapshots, arrays['chi2min_global'][0], arrays['chi2min_bkg'][0])


def run_prob_scan(
    model,
    engine,
    grid: ScanGrid,
    bkg_poi_value: float = 0.0,
    log: Optional[Callable[[str], None]] = None
) -> ProbScanResult:
    """Fit the observed data along the scan grid.

    The free fit gives the global minimum, a constrained fit at
    ``bkg_poi_value`` the background minimum. The grid is then scanned from
    the lower edge, each point starting from the previous optimum. All fits
    go through the retry ladder. The model state is restored afterwards.

    Args:
        model: ToyModel with observed data.
        engine: Fit engine.
        grid: Scan grid of the parameter of interest.
        bkg_poi_value: Parameter of interest under the background hypothesis.
        log: Progress sink.

    Returns:
        ProbScanResult.
    """
    if model.observed_data is None:
        raise PreconditionError(f"Model {model.name} has no observed dataset")
    if grid.poi != model.poi:
        raise PreconditionError(f"Scan parameter {grid.poi} is not the model's parameter of interest {model.poi}")

    state = model.state
    poi = model.poi
    snapshot_name = model.DATA_GLOBAL_OBS_SNAPSHOT

    def fit(strategy):
        return fit_once(engine, model, model.observed_data, strategy=strategy, snapshot_name=snapshot_name)

    with state.scoped():
        with state.released(poi, "free"):
            free = run_retry_ladder(fit, log=log, label="free data fit")
        best = state.values()
        if log:
            log(f"Global minimum: chi2={free.chi2:.6g} at {poi}={best[poi]:.6g}")

        state.set_constant(poi, True)
        state.set_value(poi, bkg_poi_value)
        bkg = run_retry_ladder(fit, log=log, label="background data fit")

        state.set_values(best)
        state.set_constant(poi, True)
        snapshots = []
        for i, scanpoint in enumerate(grid.values()):
            state.set_value(poi, scanpoint)
            outcome = run_retry_ladder(fit, log=log, label=f"data fit at {poi}={scanpoint:.6g}")
            snapshots.append(NuisanceSnapshot(
                index=i,
                scanpoint=scanpoint,
                values=MappingProxyType(state.values()),
                chi2min=outcome.chi2,
                status=outcome.status,
                cov_quality=outcome.cov_quality
            ))
            if log:
                log(f"Point {i + 1}/{len(grid)}: {poi}={scanpoint:.6g} chi2={outcome.chi2:.6g} "
                    f"status={outcome.status}")

    return ProbScanResult(snapshots, free.chi2, bkg.chi2)


def main():
    """CLI interface for the prior scan."""
    parser = argparse.ArgumentParser(
        description="Fit the observed data along the scan grid and store the nuisance parameters."
    )
    parser.add_argument('--config', required=True, help='YAML configuration file')
    parser.add_argument('--out', help='Output ROOT file (default from configuration)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Print progress')

    args = parser.parse_args()

    try:
        config = PluginScanConfig.from_yaml(args.config)
        if config.scan_var2:
            raise PreconditionError("Two dimensional plugin scans are not supported")
        model = config.model.build()
        log = print if args.verbose or config.verbose else None
        result = run_prob_scan(model, MinuitFitEngine(), config.scan, config.bkg_poi_value, log=log)
        out = args.out or config.prob_scan_path()
        result.write(out)
        print(f"Saved prior scan to {out}")
    except PluginScanError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
