#!/usr/bin/env python3
"""
Configuration management for plugin scans.

This module keeps everything a scan, an aggregation or a bootstrap needs in
one static configuration object:
- The scan grid of the parameter of interest
- The model factory (the workspace the toys are generated from)
- Toy counts, run ids, seeds and output locations

Example usage:
    from pluginscan.utils.config import PluginScanConfig

    # Load from YAML file
    config = PluginScanConfig.from_yaml('configs/counting_example.yaml')

    # Command line overrides create a new object
    config = config.with_overrides(nrun=3, n_toys=500)

    # Or create programmatically
    config = PluginScanConfig(
        name="counting",
        scan=ScanGrid(poi="mu", min_val=0.0, max_val=5.0, n_points=11),
        model=ModelConfig(factory="pluginscan.models.counting:CountingModel"),
    )
"""

import dataclasses
import importlib
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import PreconditionError


@dataclass(frozen=True)
class ScanGrid:
    """Equally spaced grid of the parameter of interest.

    The grid index is the bin index used everywhere downstream, so no
    floating point lookup of scan coordinates is ever needed.
    """
    poi: str
    min_val: float
    max_val: float
    n_points: int = 25

    def __post_init__(self):
        if self.n_points < 1:
            raise PreconditionError(f"Scan grid needs at least one point, got {self.n_points}")
        if self.max_val < self.min_val:
            raise PreconditionError(
                f"Scan range of {self.poi} is inverted: [{self.min_val}, {self.max_val}]"
            )

    def __len__(self) -> int:
        return self.n_points

    @property
    def step(self) -> float:
        """Calculate step size."""
        if self.n_points <= 1:
            return 0.0
        return (self.max_val - self.min_val) / (self.n_points - 1)

    def coordinate(self, index: int) -> float:
        """Scan coordinate of grid position ``index``."""
        if not 0 <= index < self.n_points:
            raise IndexError(f"Grid index {index} outside [0, {self.n_points})")
        if self.n_points == 1:
            return self.min_val
        return self.min_val + (self.max_val - self.min_val) * index / (self.n_points - 1)

    def values(self) -> List[float]:
        """Get list of scan values."""
        return [self.coordinate(i) for i in range(self.n_points)]

    def index_of(self, value: float, rtol: float = 1e-5) -> int:
        """Get the grid index of a scan coordinate.

        Args:
            value: Scan coordinate.
            rtol: Allowed distance to the nearest grid point, relative to the
                grid step (or to the range for a single point grid).

        Returns:
            Grid index.

        Raises:
            ValueError: If the value is not on the grid.
        """
        if self.n_points == 1:
            index = 0
        else:
            index = int(round((value - self.min_val) / self.step))
            index = min(max(index, 0), self.n_points - 1)
        scale = self.step if self.n_points > 1 else max(abs(self.min_val), 1.0)
        if abs(self.coordinate(index) - value) > rtol * scale:
            raise ValueError(f"{self.poi}={value} is not a point of the scan grid")
        return index

    def bin_edges(self) -> List[float]:
        """Histogram edges with one bin centred on each grid point."""
        half = self.step / 2 if self.n_points > 1 else 0.5
        return [self.min_val - half + i * 2 * half for i in range(self.n_points + 1)]

    def matches(self, n_points: int, min_val: float, max_val: float, rtol: float = 1e-5) -> bool:
        """Check whether another grid description is compatible with this one."""
        if n_points != self.n_points:
            return False
        scale = max(abs(self.max_val), abs(self.min_val)) or 1.0
        return (abs(min_val - self.min_val) / scale <= rtol
                and abs(max_val - self.max_val) / scale <= rtol)


@dataclass(frozen=True)
class ModelConfig:
    """Import path and options of the model factory.

    The factory is given as ``"package.module:callable"`` and is called with
    ``options`` as keyword arguments.
    """
    factory: str = "pluginscan.models.counting:CountingModel"
    options: Dict[str, Any] = field(default_factory=dict)

    def build(self):
        """Import the factory and build the model."""
        module_name, _, attr = self.factory.partition(':')
        if not attr:
            raise PreconditionError(
                f"Model factory must look like 'module:callable', got '{self.factory}'"
            )
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise PreconditionError(f"Cannot import model module '{module_name}': {e}") from e
        factory = getattr(module, attr, None)
        if factory is None:
            raise PreconditionError(f"Module '{module_name}' has no attribute '{attr}'")
        return factory(**self.options)


@dataclass(frozen=True)
class RunSelection:
    """Which run files to read at aggregation time."""
    run_min: int = 1
    run_max: int = 1
    input_files: Tuple[str, ...] = ()

    @property
    def explicit(self) -> bool:
        """True if an explicit file list replaces the run range."""
        return len(self.input_files) > 0


@dataclass(frozen=True)
class PluginScanConfig:
    """
    Master configuration of a plugin scan.

    Attributes:
        name: Model/analysis identifier, used in file names.
        scan: Scan grid of the parameter of interest.
        model: Model factory configuration.
        scan_var2: Second scan variable. Only one dimensional scans are
            supported, setting it is an error.
        n_toys: Toys per scan point.
        nrun: Run id of this invocation, part of the output file name.
        seed: Base random seed. None draws fresh entropy for every run.
        importance: Scale the number of toys by the asymptotic p-value.
        bkg_toys: Generate background-only companion toys for CLs.
        bkg_poi_value: Value of the parameter of interest under the
            background hypothesis.
        enforce_phys_range: Use the "phys" instead of the "free" parameter
            ranges during toy fits.
        output_dir: Directory of run files and prior scan results.
        plots_dir: Directory of control plots.
        prob_scan_file: Explicit prior scan file.
        runs: Run files to aggregate.
        n_bootstrap: Bootstrap samples.
        bootstrap_point: Grid index used by the bootstrap.
        control_plots: Draw control plots during aggregation.
        debug: Print debug output.
        verbose: Print progress output.
    """
    name: str
    scan: ScanGrid
    model: ModelConfig = field(default_factory=ModelConfig)
    scan_var2: Optional[str] = None
    n_toys: int = 100
    nrun: int = 1
    seed: Optional[int] = None
    importance: bool = False
    bkg_toys: bool = True
    bkg_poi_value: float = 0.0
    enforce_phys_range: bool = False
    output_dir: str = "root"
    plots_dir: str = "plots"
    prob_scan_file: Optional[str] = None
    runs: RunSelection = field(default_factory=RunSelection)
    n_bootstrap: int = 1000
    bootstrap_point: int = 0
    control_plots: bool = False
    debug: bool = False
    verbose: bool = False

    @classmethod
    def from_yaml(cls, filepath: str) -> 'PluginScanConfig':
        """Load configuration from a YAML file.

        Args:
            filepath: Path to YAML configuration file.

        Returns:
            PluginScanConfig instance.
        """
        with open(filepath, 'r') as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PluginScanConfig':
        """Build a configuration from plain data (as read from YAML)."""
        scan_data = data.get('scan')
        if not scan_data or 'poi' not in scan_data:
            raise PreconditionError("Configuration needs a 'scan' section with a 'poi'")
        scan = ScanGrid(
            poi=scan_data['poi'],
            min_val=float(scan_data.get('min', 0.0)),
            max_val=float(scan_data.get('max', 1.0)),
            n_points=int(scan_data.get('n_points', 25))
        )

        model_data = data.get('model', {})
        if isinstance(model_data, str):
            model = ModelConfig(factory=model_data)
        else:
            model = ModelConfig(
                factory=model_data.get('factory', ModelConfig.factory),
                options=dict(model_data.get('options', {}))
            )

        runs_data = data.get('runs', {})
        runs = RunSelection(
            run_min=int(runs_data.get('min', 1)),
            run_max=int(runs_data.get('max', 1)),
            input_files=tuple(runs_data.get('input_files', []))
        )

        known = {f.name for f in dataclasses.fields(cls)} - {'name', 'scan', 'model', 'runs'}
        extra = {k: v for k, v in data.items() if k in known}
        return cls(name=data.get('name', 'analysis'), scan=scan, model=model, runs=runs, **extra)

    def to_yaml(self, filepath: str) -> None:
        """Save configuration to a YAML file.

        Args:
            filepath: Output YAML file path.
        """
        data = {
            'name': self.name,
            'scan': {
                'poi': self.scan.poi,
                'min': self.scan.min_val,
                'max': self.scan.max_val,
                'n_points': self.scan.n_points
            },
            'model': {
                'factory': self.model.factory,
                'options': dict(self.model.options)
            },
            'runs': {
                'min': self.runs.run_min,
                'max': self.runs.run_max,
                'input_files': list(self.runs.input_files)
            }
        }
        for f in dataclasses.fields(self):
            if f.name not in data:
                data[f.name] = getattr(self, f.name)

        with open(filepath, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def with_overrides(self, **kwargs) -> 'PluginScanConfig':
        """Return a copy with some fields replaced. None values are ignored."""
        changes = {k: v for k, v in kwargs.items() if v is not None}
        return dataclasses.replace(self, **changes)

    @property
    def run_dir(self) -> str:
        """Directory holding the run files of this scan."""
        return os.path.join(self.output_dir, f"pluginscan_{self.name}_{self.scan.poi}")

    def run_file(self, nrun: int) -> str:
        """Path of the record store file of run ``nrun``."""
        return os.path.join(self.run_dir, f"pluginscan_{self.name}_{self.scan.poi}_run{nrun}.root")

    def prob_scan_path(self) -> str:
        """Path of the prior scan result."""
        if self.prob_scan_file:
            return self.prob_scan_file
        return os.path.join(
            self.output_dir,
            f"probscan_{self.name}_{self.scan.n_points}p_{self.scan.poi}.root"
        )

    def plot_path(self, stem: str, ext: str = "pdf") -> str:
        """Path of a control plot."""
        return os.path.join(self.plots_dir, f"{self.name}_{stem}.{ext}")
