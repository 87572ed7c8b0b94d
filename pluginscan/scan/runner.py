#!/usr/bin/env python3
"""
Plugin scan runner.

This module runs the toy part of a plugin scan for one run id:
- Checks the configuration against the model and the prior scan
- Generates the background-only companion toys once per run
- Runs the toy loop at every grid point
- Writes the records of the run to one ROOT file

Several runs with different run ids can be started in parallel and merged
at aggregation time.

Example usage:
    from pluginscan.scan.runner import PluginScanRunner
    from pluginscan.utils.config import PluginScanConfig

    config = PluginScanConfig.from_yaml('configs/counting_example.yaml')
    runner = PluginScanRunner(config.with_overrides(nrun=2))
    store = runner.run()
"""

import argparse
import math
import sys
from typing import List, Optional

import numpy as np

from ..fit.engine import FitEngine, MinuitFitEngine
from ..fit.model import ToyModel
from ..utils.config import PluginScanConfig
from ..utils.errors import PluginScanError, PreconditionError
from ..utils.prob_scan import ProbScanResult
from ..utils.record_store import RecordStore
from .driver import ScanPointDriver
from .toys import Toy, ToyGenerator


class PluginScanRunner:
    """
    Run the plugin toys of one run over the full scan grid.

    Attributes:
        config: Static scan configuration.
        model: Model the toys are generated from.
        engine: Fit engine.
        prob_scan: Prior scan result, available after ``init_scan``.
    """

    def __init__(
        self,
        config: PluginScanConfig,
        model: Optional[ToyModel] = None,
        engine: Optional[FitEngine] = None,
        prob_scan: Optional[ProbScanResult] = None,
        verbose: Optional[bool] = None
    ):
        """Initialize runner.

        Args:
            config: Scan configuration.
            model: Model. Built from ``config.model`` if not given.
            engine: Fit engine. Minuit if not given.
            prob_scan: Prior scan result. Read from ``config.prob_scan_path()``
                if not given.
            verbose: Print progress messages. Defaults to ``config.verbose``.
        """
        self.config = config
        self.model = model
        self.engine = engine if engine is not None else MinuitFitEngine()
        self.prob_scan = prob_scan
        self.verbose = config.verbose if verbose is None else verbose
        self._initialized = False

    def _log(self, msg: str):
        """Print message if verbose."""
        if self.verbose:
            print(msg)

    @property
    def bkg_enabled(self) -> bool:
        return self.config.bkg_toys and self.model is not None and self.model.has_bkg_model

    def init_scan(self) -> None:
        """Check preconditions and prepare the model for the toy fits.

        Raises:
            PreconditionError: On a two dimensional scan, an unknown scan
                parameter, a CLs grid that does not start at the background
                hypothesis, or a missing or mismatched prior scan.
        """
        config = self.config
        grid = config.scan
        if config.scan_var2:
            raise PreconditionError(
                f"Two dimensional plugin scans are not supported (second variable: {config.scan_var2})"
            )
        if self.model is None:
            self.model = config.model.build()
        model = self.model
        if grid.poi not in model.state:
            raise PreconditionError(
                f"No such scan parameter: {grid.poi}. Available parameters: {', '.join(model.state.names())}"
            )
        model.poi = grid.poi
        if model.observed_data is None:
            raise PreconditionError(f"Model {model.name} has no observed dataset")

        if self.bkg_enabled and not math.isclose(grid.min_val, config.bkg_poi_value, abs_tol=1e-12):
            raise PreconditionError(
                f"For the CLs toys the first scan point must be {config.bkg_poi_value}, not {grid.min_val}"
            )

        if self.prob_scan is None:
            self.prob_scan = ProbScanResult.load(config.prob_scan_path())
        self.prob_scan.validate_grid(grid)

        range_name = "phys" if config.enforce_phys_range else "free"
        model.state.use_range(range_name)
        self._initialized = True

    def make_rng(self, nrun: int) -> np.random.Generator:
        """Random stream of a run. Fresh entropy if no seed is configured."""
        if self.config.seed is None:
            return np.random.default_rng()
        return np.random.default_rng([self.config.seed, nrun])

    def generate_bkg_toys(self, generator: ToyGenerator) -> List[Toy]:
        """Background-only toys of the run, generated at the first scan point."""
        state = self.model.state
        with state.scoped():
            state.set_values(self.prob_scan[0].values)
            return generator.generate_bkg_batch(self.config.n_toys)

    def run(self, nrun: Optional[int] = None, write: bool = True) -> RecordStore:
        """Run the toys of all scan points.

        Args:
            nrun: Run id, defaults to ``config.nrun``.
            write: Write the record store to ``config.run_file(nrun)``.

        Returns:
            The record store of the run.
        """
        if not self._initialized:
            self.init_scan()
        config = self.config
        grid = config.scan
        nrun = config.nrun if nrun is None else nrun
        model = self.model

        generator = ToyGenerator(model, self.make_rng(nrun))
        driver = ScanPointDriver(
            model, self.engine, self.prob_scan, grid,
            n_toys=config.n_toys,
            nrun=nrun,
            importance=config.importance,
            free_range="phys" if config.enforce_phys_range else "free",
            verbose=config.verbose,
            debug=config.debug
        )

        bkg_toys = None
        if self.bkg_enabled:
            self._log(f"Generating {config.n_toys} background-only toys")
            bkg_toys = self.generate_bkg_toys(generator)

        store = RecordStore()
        self._log(f"Starting plugin scan of {grid.poi} with {len(grid)} points, "
                  f"{config.n_toys} toys per point (run {nrun})")
        for i in range(len(grid)):
            self._log(f"Point {i + 1}/{len(grid)}: {grid.poi}={grid.coordinate(i):.6g}")
            driver.run_point(i, generator, store, bkg_toys)
        model.set_data(model.observed_data)
        model.load_snapshot(model.DATA_GLOBAL_OBS_SNAPSHOT)

        if write:
            out = config.run_file(nrun)
            store.write(out)
            self._log(f"Saved {len(store)} toys to {out}")
        return store


def main():
    """CLI interface for the plugin toy scan."""
    parser = argparse.ArgumentParser(
        description="Run the plugin toys of one run over the scan grid."
    )
    parser.add_argument('--config', required=True, help='YAML configuration file')
    parser.add_argument('--nrun', type=int, help='Run id')
    parser.add_argument('--ntoys', type=int, help='Toys per scan point')
    parser.add_argument('--seed', type=int, help='Base random seed')
    parser.add_argument('--prob-scan', dest='prob_scan_file', help='Prior scan ROOT file')
    parser.add_argument('--importance', action='store_true', default=None,
                        help='Scale toys per point by the asymptotic p-value')
    parser.add_argument('--no-bkg-toys', dest='bkg_toys', action='store_false', default=None,
                        help='Do not generate background-only companion toys')
    parser.add_argument('--phys', dest='enforce_phys_range', action='store_true', default=None,
                        help='Use the physical parameter ranges in toy fits')
    parser.add_argument('--debug', action='store_true', default=None, help='Print debug output')
    parser.add_argument('-v', '--verbose', action='store_true', default=None, help='Print progress')

    args = parser.parse_args()

    try:
        config = PluginScanConfig.from_yaml(args.config).with_overrides(
            nrun=args.nrun,
            n_toys=args.ntoys,
            seed=args.seed,
            prob_scan_file=args.prob_scan_file,
            importance=args.importance,
            bkg_toys=args.bkg_toys,
            enforce_phys_range=args.enforce_phys_range,
            debug=args.debug,
            verbose=args.verbose
        )
        PluginScanRunner(config).run()
    except PluginScanError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
