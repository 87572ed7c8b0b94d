#!/usr/bin/env python3
"""
Persistence of toy records.

Every toy of the plugin scan produces one ``ToyRecord``. The records of one
run are collected in an append-only ``RecordStore`` and written to one ROOT
file per run. At aggregation time the run files are read back and chained
into a single column table.

Example usage:
    from pluginscan.utils.record_store import RecordStore, find_run_files, read_runs

    store = RecordStore()
    store.append(record)
    store.write(config.run_file(nrun))

    table = read_runs(find_run_files(config))
    print(table['q'][:10])

    # Export the aggregated curves
    write_pvalue_table(result, "cls_mu.txt")
"""

import os
from dataclasses import dataclass, field, fields
from typing import Dict, Iterator, List, Mapping, Sequence

import numpy as np
import uproot

from .errors import PreconditionError
from .stats import clip_test_statistic, upper_limit_test_statistic

TREE_NAME = "plugin"

# Branch prefixes of the parameter values after the constrained and the free toy fit.
SCAN_PAR_PREFIX = "scan_par_"
FREE_PAR_PREFIX = "free_par_"

# Columns of type int in the stored tree, everything else is float64.
INT_COLUMNS = (
    'npoint', 'nrun', 'ntoy', 'status_scan_data', 'cov_qual_scan_data',
    'status_scan', 'cov_qual_scan', 'status_scan_bkg', 'cov_qual_scan_bkg',
    'status_free', 'cov_qual_free', 'status_free_bkg'
)


@dataclass(frozen=True)
class ToyRecord:
    """
    Outcome of one pseudo-experiment at one scan point.

    Data level quantities (from the prior scan) are repeated in each record
    so that a run file is self-contained. Background fields are NaN when no
    background model is configured.
    """
    scanpoint: float
    npoint: int
    nrun: int
    ntoy: int
    # data
    chi2min: float
    chi2min_global: float
    chi2min_bkg: float
    status_scan_data: int
    cov_qual_scan_data: int
    generic_prob_pvalue: float
    # constrained toy fit
    chi2min_toy: float
    status_scan: int
    cov_qual_scan: int
    # constrained fit to the background companion
    chi2min_bkg_toy: float
    status_scan_bkg: int
    cov_qual_scan_bkg: int
    # free toy fit
    chi2min_global_toy: float
    status_free: int
    cov_qual_free: int
    scanbest: float
    # free fit to the background companion
    chi2min_global_bkg_toy: float
    status_free_bkg: int
    scanbest_bkg: float
    pars_scan: Mapping[str, float] = field(default_factory=dict)
    pars_free: Mapping[str, float] = field(default_factory=dict)

    @property
    def raw_test_statistic(self) -> float:
        return self.chi2min_toy - self.chi2min_global_toy

    @property
    def test_statistic(self) -> float:
        """Toy test statistic with the one-sided clipping applied."""
        return clip_test_statistic(self.raw_test_statistic, self.scanbest, self.scanpoint)

    @property
    def bkg_test_statistic(self) -> float:
        """Test statistic of the background companion, zero when its best fit is above the scan point."""
        q = self.chi2min_bkg_toy - self.chi2min_global_bkg_toy
        return upper_limit_test_statistic(q, self.scanbest_bkg, self.scanpoint)

    @property
    def observed_test_statistic(self) -> float:
        return self.chi2min - self.chi2min_global


_SCALAR_FIELDS = [f.name for f in fields(ToyRecord) if f.name not in ('pars_scan', 'pars_free')]


class RecordStore:
    """Append-only sequence of the toy records of one run."""

    def __init__(self, records: Sequence[ToyRecord] = ()):
        self._records: List[ToyRecord] = list(records)

    def append(self, record: ToyRecord) -> None:
        self._records.append(record)

    def extend(self, records: Sequence[ToyRecord]) -> None:
        for record in records:
            self.append(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ToyRecord]:
        return iter(self._records)

    def __getitem__(self, index: int) -> ToyRecord:
        return self._records[index]

    def to_arrays(self) -> Dict[str, np.ndarray]:
        """Column table of the records, including the derived test statistics."""
        arrays = {}
        for name in _SCALAR_FIELDS:
            dtype = np.int32 if name in INT_COLUMNS else np.float64
            arrays[name] = np.array([getattr(r, name) for r in self._records], dtype=dtype)
        arrays['q'] = np.array([r.test_statistic for r in self._records], dtype=np.float64)
        arrays['q_bkg'] = np.array([r.bkg_test_statistic for r in self._records], dtype=np.float64)

        par_names = list(self._records[0].pars_scan) if self._records else []
        for par in par_names:
            arrays[SCAN_PAR_PREFIX + par] = np.array(
                [r.pars_scan.get(par, np.nan) for r in self._records], dtype=np.float64)
            arrays[FREE_PAR_PREFIX + par] = np.array(
                [r.pars_free.get(par, np.nan) for r in self._records], dtype=np.float64)
        return arrays

    def write(self, filepath: str) -> None:
        """Write the records to a ROOT file with a single ``plugin`` tree."""
        arrays = self.to_arrays()
        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with uproot.recreate(filepath) as f:
            tree = f.mktree(TREE_NAME, {k: v.dtype for k, v in arrays.items()})
            if len(self):
                tree.extend(arrays)


def read_runs(paths: Sequence[str], verbose: bool = False) -> Dict[str, np.ndarray]:
    """Read and chain the record trees of several run files.

    Args:
        paths: Run files. Order does not matter for aggregation.
        verbose: Print the files being read.

    Returns:
        Dict of column name to concatenated numpy array.

    Raises:
        PreconditionError: If a file is missing, has no record tree, or no
            file is given at all.
    """
    if not paths:
        raise PreconditionError("No run files to read")

    chunks: List[Dict[str, np.ndarray]] = []
    for path in paths:
        if not os.path.exists(path):
            raise PreconditionError(f"Run file not found: {path}")
        with uproot.open(path) as f:
            if TREE_NAME not in f:
                raise PreconditionError(f"No '{TREE_NAME}' tree in {path}")
            chunk = f[TREE_NAME].arrays(library="np")
        if verbose:
            print(f"Reading {path}: {len(chunk.get('npoint', []))} toys")
        chunks.append(chunk)

    columns = set(chunks[0])
    for path, chunk in zip(paths, chunks):
        if set(chunk) != columns:
            raise PreconditionError(f"Run file {path} has different columns than {paths[0]}")
    return {name: np.concatenate([chunk[name] for chunk in chunks]) for name in chunks[0]}


def find_run_files(config) -> List[str]:
    """Run files selected by the configuration (explicit list or run range)."""
    runs = config.runs
    if runs.explicit:
        return list(runs.input_files)
    if runs.run_max < runs.run_min:
        raise PreconditionError(f"Empty run range [{runs.run_min}, {runs.run_max}]")
    return [config.run_file(nrun) for nrun in range(runs.run_min, runs.run_max + 1)]


def write_pvalue_table(result, filepath: str) -> None:
    """Write the aggregated curves as a tab separated text file.

    Args:
        result: Object with a ``table()`` method returning ordered columns.
        filepath: Output text file.
    """
    columns = result.table()
    names = list(columns)
    n = len(columns[names[0]]) if names else 0
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(filepath, 'w') as f:
        f.write('\t'.join(names) + '\n')
        for i in range(n):
            f.write('\t'.join(f"{float(columns[name][i]):.6g}" for name in names) + '\n')
    print(f"Wrote {n} points to {filepath}")
