"""
Live parameter state and the model interface toy fits run against.

The parameter vector of a model is shared by every fit of a scan. Each fit
leaves the parameters at its optimum, so every step that needs a defined
starting point takes a snapshot and restores it. ``ModelState`` makes that
explicit:

    with model.state.scoped():
        model.state.set_values(snapshot.values)
        with model.state.released(model.poi):
            outcome = fit_once(engine, model, toy.data, strategy=0)
    # values, constancy and limits are back to what they were

``ToyModel`` is the workspace: named parameters, observed data, global
observables and the ability to generate toys from the current parameters.
"""

import abc
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import numpy as np

from ..utils.errors import PreconditionError


@dataclass
class Parameter:
    """One model parameter with its active limits and named ranges."""
    name: str
    value: float
    min_val: float = -math.inf
    max_val: float = math.inf
    constant: bool = False
    ranges: Dict[str, Tuple[float, float]] = field(default_factory=dict)


@dataclass(frozen=True)
class StateSnapshot:
    """Values, constancy flags and limits of all parameters."""
    values: Dict[str, float]
    constant: Dict[str, bool]
    limits: Dict[str, Tuple[float, float]]


class ModelState:
    """Ordered set of named parameters of a model."""

    def __init__(self, parameters: Iterable[Parameter]):
        self._pars: Dict[str, Parameter] = {}
        for par in parameters:
            if par.name in self._pars:
                raise ValueError(f"Duplicate parameter: {par.name}")
            self._pars[par.name] = par

    def __iter__(self) -> Iterator[str]:
        return iter(self._pars)

    def __len__(self) -> int:
        return len(self._pars)

    def __contains__(self, name: str) -> bool:
        return name in self._pars

    def __getitem__(self, name: str) -> Parameter:
        try:
            return self._pars[name]
        except KeyError:
            raise KeyError(f"Unknown parameter: {name}. Available: {list(self._pars)}") from None

    def names(self) -> List[str]:
        return list(self._pars)

    def value(self, name: str) -> float:
        return self[name].value

    def values(self) -> Dict[str, float]:
        """Copy of all parameter values."""
        return {name: par.value for name, par in self._pars.items()}

    def set_value(self, name: str, value: float) -> None:
        self[name].value = float(value)

    def set_values(self, values: Mapping[str, float]) -> None:
        """Set the values of all known parameters found in ``values``."""
        for name, value in values.items():
            if name in self._pars:
                self._pars[name].value = float(value)

    def set_constant(self, name: str, constant: bool = True) -> None:
        self[name].constant = constant

    def is_constant(self, name: str) -> bool:
        return self[name].constant

    def floating(self) -> List[str]:
        """Names of the parameters a fit may move."""
        return [name for name, par in self._pars.items() if not par.constant]

    def limits(self, name: str) -> Tuple[float, float]:
        par = self[name]
        return (par.min_val, par.max_val)

    def set_limits(self, name: str, min_val: float, max_val: float) -> None:
        par = self[name]
        par.min_val, par.max_val = float(min_val), float(max_val)

    def remove_limits(self, name: str) -> None:
        self.set_limits(name, -math.inf, math.inf)

    def set_range(self, name: str, range_name: str, min_val: float, max_val: float) -> None:
        """Define (or redefine) a named range of a parameter."""
        self[name].ranges[range_name] = (float(min_val), float(max_val))

    def get_range(self, name: str, range_name: str) -> Optional[Tuple[float, float]]:
        return self[name].ranges.get(range_name)

    def use_range(self, range_name: str, names: Optional[Iterable[str]] = None) -> None:
        """Activate a named range as limits. Parameters without it keep theirs."""
        for name in (names if names is not None else self._pars):
            rng = self[name].ranges.get(range_name)
            if rng is not None:
                self.set_limits(name, *rng)

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            values=self.values(),
            constant={name: par.constant for name, par in self._pars.items()},
            limits={name: (par.min_val, par.max_val) for name, par in self._pars.items()},
        )

    def restore(self, snapshot: StateSnapshot) -> None:
        for name, par in self._pars.items():
            if name in snapshot.values:
                par.value = snapshot.values[name]
                par.constant = snapshot.constant[name]
                par.min_val, par.max_val = snapshot.limits[name]

    @contextmanager
    def scoped(self):
        """Restore values, constancy and limits when the block exits."""
        saved = self.snapshot()
        try:
            yield self
        finally:
            self.restore(saved)

    @contextmanager
    def released(self, name: str, range_name: Optional[str] = None):
        """Let ``name`` float inside the block.

        The limits are taken from the named range if the parameter defines
        it, and removed otherwise.
        """
        par = self[name]
        saved = (par.constant, par.min_val, par.max_val)
        par.constant = False
        rng = par.ranges.get(range_name) if range_name else None
        par.min_val, par.max_val = rng if rng is not None else (-math.inf, math.inf)
        try:
            yield par
        finally:
            par.constant, par.min_val, par.max_val = saved


class ToyModel(abc.ABC):
    """
    Parametric model the plugin scan generates toys from and fits.

    Subclasses provide the likelihood and the generators. The base class
    handles data, global observables and their named snapshots.

    Attributes:
        name: Model name, used in output file names.
        poi: Name of the parameter of interest.
        state: Live parameter state.
        global_observables: Global observables the likelihood uses right now.
        observed_data: The real dataset.
        observed_global_observables: Global observables of the real dataset.
        data: Dataset currently set for fitting.
    """

    TOY_GLOBAL_OBS_SNAPSHOT = "toy_global_observables"
    DATA_GLOBAL_OBS_SNAPSHOT = "data_global_observables"

    def __init__(
        self,
        name: str,
        poi: str,
        state: ModelState,
        observed_data: Any = None,
        observed_global_observables: Optional[Mapping[str, float]] = None
    ):
        if poi not in state:
            raise PreconditionError(
                f"No such scan parameter: {poi}. Available parameters: {', '.join(state.names())}"
            )
        self.name = name
        self.poi = poi
        self.state = state
        self.observed_data = observed_data
        self.observed_global_observables = dict(observed_global_observables or {})
        self.global_observables: Dict[str, float] = dict(self.observed_global_observables)
        self.data = observed_data
        self._snapshots: Dict[str, Dict[str, float]] = {}
        # saved even when empty, fits to data always load it
        self.save_snapshot(self.DATA_GLOBAL_OBS_SNAPSHOT, self.observed_global_observables)

    @abc.abstractmethod
    def nll(self, values: Mapping[str, float], data: Any) -> float:
        """Negative log-likelihood of ``data`` at parameter ``values``."""

    @abc.abstractmethod
    def generate_toys(self, rng: np.random.Generator) -> Any:
        """Generate a toy dataset from the current parameter values."""

    @abc.abstractmethod
    def generate_global_observables(self, rng: np.random.Generator) -> Dict[str, float]:
        """Generate toy global observables from the current parameter values."""

    @property
    def has_bkg_model(self) -> bool:
        """True if the model can generate background-only toys."""
        return False

    def generate_bkg_toys(self, rng: np.random.Generator) -> Any:
        """Generate a background-only toy dataset."""
        raise NotImplementedError(f"Model {self.name} has no background-only variant")

    def set_data(self, data: Any) -> None:
        self.data = data

    def save_snapshot(self, name: str, observables: Mapping[str, float]) -> None:
        self._snapshots[name] = dict(observables)

    def load_snapshot(self, name: str) -> bool:
        """Load a named global observable snapshot. False if it does not exist."""
        snapshot = self._snapshots.get(name)
        if snapshot is None:
            return False
        self.global_observables = dict(snapshot)
        return True

    def has_snapshot(self, name: str) -> bool:
        return name in self._snapshots

    def print_parameters(self) -> str:
        return "\n".join(
            f"  {name:<20} {par.value:12.6g}  [{par.min_val:.4g}, {par.max_val:.4g}]"
            f"{'  (const)' if par.constant else ''}"
            for name, par in ((n, self.state[n]) for n in self.state)
        )
