"""
Toy loop at one scan point.

For scan point i the toys are generated at the nuisance parameters of the
constrained data fit (the plugin method). Each toy is fitted three times:
with the parameter of interest fixed, once more with the parameter fixed on
its background-only companion, and with the parameter free. Each fit goes
through the retry ladder; the free fit additionally requires a
non-negative test statistic.
"""

import math
from typing import Callable, List, Optional, Sequence, Tuple

from ..fit.engine import FitEngine, fit_once
from ..fit.ladder import (STRATEGIES, non_negative_test_statistic,
                          recover_negative_test_statistic, run_retry_ladder)
from ..fit.model import ToyModel
from ..fit.outcome import INVALID_STATUS, FitOutcome, describe_outcome
from ..utils.config import ScanGrid
from ..utils.prob_scan import NuisanceSnapshot, ProbScanResult
from ..utils.record_store import RecordStore, ToyRecord
from ..utils.stats import chi2_prob, importance_factor, p_value_test_statistic
from .toys import Toy, ToyGenerator

# Scan points up to this far above the upper limit are still scanned.
LIMIT_TOLERANCE = 2e-13


class ScanPointDriver:
    """
    Run the toys of single scan points and emit their records.

    Args:
        model: Model to generate from and fit.
        engine: Fit engine.
        prob_scan: Constrained data fits along the grid.
        grid: Scan grid.
        n_toys: Nominal number of toys per point.
        nrun: Run id written to the records.
        importance: Scale the number of toys with the asymptotic p-value.
        free_range: Named range the parameter of interest gets in free fits.
        strategies: Retry ladder strategies.
        verbose: Print fit diagnostics.
        debug: Print per-toy summaries.
    """

    def __init__(
        self,
        model: ToyModel,
        engine: FitEngine,
        prob_scan: ProbScanResult,
        grid: ScanGrid,
        n_toys: int = 100,
        nrun: int = 1,
        importance: bool = False,
        free_range: str = "free",
        strategies: Sequence[int] = STRATEGIES,
        verbose: bool = False,
        debug: bool = False
    ):
        self.model = model
        self.engine = engine
        self.prob_scan = prob_scan
        self.grid = grid
        self.n_toys = n_toys
        self.nrun = nrun
        self.importance = importance
        self.free_range = free_range
        self.strategies = tuple(strategies)
        self.verbose = verbose
        self.debug = debug

    def _log(self, msg: str):
        """Print message if verbose."""
        if self.verbose:
            print(msg)

    def _debug(self, msg: str):
        if self.debug:
            print(f"DEBUG: {msg}")

    @property
    def _fit_log(self) -> Optional[Callable[[str], None]]:
        return self._log if self.verbose else None

    def _ladder(self, data, label: str, accept=None) -> FitOutcome:
        def fit(strategy):
            return fit_once(self.engine, self.model, data, strategy=strategy)
        kwargs = {} if accept is None else {'accept': accept}
        return run_retry_ladder(fit, strategies=self.strategies, log=self._fit_log, label=label, **kwargs)

    def _load_snapshot(self, snapshot: NuisanceSnapshot, scanpoint: float) -> None:
        state = self.model.state
        state.set_values(snapshot.values)
        state.set_value(self.model.poi, scanpoint)
        state.set_constant(self.model.poi, True)

    def n_actual_toys(self, snapshot: NuisanceSnapshot) -> int:
        """Number of toys to run at a point."""
        if not self.importance:
            return self.n_toys
        pvalue = float(chi2_prob(max(snapshot.chi2min - self.prob_scan.chi2min_global, 0.0), 1))
        return int(self.n_toys * importance_factor(pvalue))

    def in_limits(self, scanpoint: float) -> bool:
        lo, hi = self.model.state.limits(self.model.poi)
        return lo <= scanpoint <= hi + LIMIT_TOLERANCE

    def fit_bkg_companions(self, index: int, bkg_toys: Sequence[Toy],
                           generator: ToyGenerator) -> List[Tuple[FitOutcome, float]]:
        """Free fits of the background-only toys, starting from snapshot ``index``.

        Returns:
            One (outcome, best fit value of the parameter of interest) per toy.
        """
        snapshot = self.prob_scan[index]
        scanpoint = self.grid.coordinate(index)
        state = self.model.state
        cache = []
        with state.scoped():
            for toy in bkg_toys:
                self._load_snapshot(snapshot, scanpoint)
                generator.activate(toy)
                with state.released(self.model.poi, self.free_range):
                    outcome = self._ladder(toy.data, "free background toy fit")
                    cache.append((outcome, state.value(self.model.poi)))
        return cache

    def run_point(
        self,
        index: int,
        generator: ToyGenerator,
        store: RecordStore,
        bkg_toys: Optional[Sequence[Toy]] = None
    ) -> int:
        """Run all toys of scan point ``index`` and append their records.

        The parameter state of the model is the same before and after.

        Args:
            index: Grid index.
            generator: Toy generator of the run.
            store: Record store of the run.
            bkg_toys: Background-only companion toys, at least as many as toys
                at this point. None disables the background fits.

        Returns:
            Number of records appended.
        """
        model = self.model
        state = model.state
        poi = model.poi
        scanpoint = self.grid.coordinate(index)
        snapshot = self.prob_scan[index]

        if not self.in_limits(scanpoint):
            lo, hi = state.limits(poi)
            self._log(f"Skipping {poi}={scanpoint:.6g}: outside [{lo:.6g}, {hi:.6g}]")
            return 0

        n_toys = self.n_actual_toys(snapshot)
        if bkg_toys is not None and len(bkg_toys) < n_toys:
            raise ValueError(f"Need {n_toys} background toys, got {len(bkg_toys)}")

        chi2min_global = self.prob_scan.chi2min_global
        data_level = dict(
            scanpoint=scanpoint,
            npoint=index,
            nrun=self.nrun,
            chi2min=snapshot.chi2min,
            chi2min_global=chi2min_global,
            chi2min_bkg=self.prob_scan.chi2min_bkg,
            status_scan_data=snapshot.status,
            cov_qual_scan_data=snapshot.cov_quality,
            generic_prob_pvalue=p_value_test_statistic(snapshot.chi2min - chi2min_global, self.verbose)
        )

        emitted = 0
        with state.scoped():
            companions = None
            if bkg_toys is not None:
                companions = self.fit_bkg_companions(index, bkg_toys[:n_toys], generator)

            for j in range(n_toys):
                self._debug(f"new toy {j} at {poi}={scanpoint:.6g}")

                # 1. toy from the constrained data fit
                self._load_snapshot(snapshot, scanpoint)
                toy = generator.generate()
                generator.activate(toy)

                # 2. parameter of interest fixed
                self._load_snapshot(snapshot, scanpoint)
                constrained = self._ladder(toy.data, "constrained toy fit")
                pars_scan = state.values()

                # 2.5 parameter of interest fixed, background companion
                if companions is not None:
                    self._load_snapshot(snapshot, scanpoint)
                    generator.activate(bkg_toys[j])
                    bkg_constrained = self._ladder(bkg_toys[j].data, "constrained background toy fit")
                    generator.activate(toy)
                    bkg_free, scanbest_bkg = companions[j]
                    bkg_fields = dict(
                        chi2min_bkg_toy=bkg_constrained.chi2,
                        status_scan_bkg=bkg_constrained.status,
                        cov_qual_scan_bkg=bkg_constrained.cov_quality,
                        chi2min_global_bkg_toy=bkg_free.chi2,
                        status_free_bkg=bkg_free.status,
                        scanbest_bkg=scanbest_bkg
                    )
                else:
                    bkg_fields = dict(
                        chi2min_bkg_toy=math.nan,
                        status_scan_bkg=INVALID_STATUS,
                        cov_qual_scan_bkg=0,
                        chi2min_global_bkg_toy=math.nan,
                        status_free_bkg=INVALID_STATUS,
                        scanbest_bkg=math.nan
                    )

                # 3. parameter of interest free
                self._load_snapshot(snapshot, scanpoint)
                with state.released(poi, self.free_range):
                    free = self._ladder(
                        toy.data, "free toy fit",
                        accept=non_negative_test_statistic(constrained.chi2)
                    ).with_test_statistic(constrained.chi2)
                    if free.test_statistic < 0:
                        self._log(f"+++++ > negative test statistic after all strategies: "
                                  f"{describe_outcome(free, 'free toy fit')}")
                        lower_edge = state.limits(poi)[0]
                        free = recover_negative_test_statistic(
                            lambda: fit_once(self.engine, model, toy.data, strategy=self.strategies[-1]),
                            state, poi, free, pars_scan,
                            lower_edge=lower_edge if math.isfinite(lower_edge) else self.grid.min_val,
                            log=self._fit_log
                        ).with_test_statistic(constrained.chi2)
                        if free.test_statistic < 0:
                            self._log(f"+++++ > suspicious toy {j}: test statistic still negative "
                                      f"({free.test_statistic:.6g})")
                    scanbest = state.value(poi)
                    pars_free = state.values()

                record = ToyRecord(
                    ntoy=j,
                    chi2min_toy=constrained.chi2,
                    status_scan=constrained.status,
                    cov_qual_scan=constrained.cov_quality,
                    chi2min_global_toy=free.chi2,
                    status_free=free.status,
                    cov_qual_free=free.cov_quality,
                    scanbest=scanbest,
                    pars_scan=pars_scan,
                    pars_free=pars_free,
                    **data_level,
                    **bkg_fields
                )
                store.append(record)
                emitted += 1
                self._debug(f"toy {j}: q={record.test_statistic:.6g} scan status={record.status_scan} "
                            f"free status={record.status_free} scanbest={scanbest:.6g}")

        return emitted
