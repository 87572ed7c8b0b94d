"""Toy generation for the plugin scan."""

from dataclasses import dataclass, field
from typing import Any, Dict, List

import numpy as np

from ..fit.model import ToyModel


@dataclass(frozen=True)
class Toy:
    """One pseudo-experiment: observables plus its global observables."""
    data: Any
    global_observables: Dict[str, float] = field(default_factory=dict)


class ToyGenerator:
    """
    Generate toys from the current parameter values of a model.

    The generator owns the random number stream of a run, so toys are
    independent of each other and reproducible for a given seed.
    """

    def __init__(self, model: ToyModel, rng: np.random.Generator):
        self.model = model
        self.rng = rng

    def generate(self) -> Toy:
        """Toy under the current (signal plus background) parameters."""
        data = self.model.generate_toys(self.rng)
        return Toy(data, self.model.generate_global_observables(self.rng))

    def generate_bkg(self) -> Toy:
        """Background-only companion toy."""
        data = self.model.generate_bkg_toys(self.rng)
        return Toy(data, self.model.generate_global_observables(self.rng))

    def generate_bkg_batch(self, n: int) -> List[Toy]:
        return [self.generate_bkg() for _ in range(n)]

    def activate(self, toy: Toy) -> None:
        """Make ``toy`` the dataset and toy global observables of the model."""
        self.model.set_data(toy.data)
        self.model.save_snapshot(ToyModel.TOY_GLOBAL_OBS_SNAPSHOT, toy.global_observables)
