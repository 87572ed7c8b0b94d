"""
Multi-bin counting experiment.

Each bin k observes n_k ~ Poisson(mu * s_k + b_k). The background b_k is a
nuisance parameter constrained by an auxiliary measurement b_obs_k with a
Gaussian of width sigma_k (the global observables). This is the smallest
model with everything the plugin scan needs: a parameter of interest,
nuisance parameters, global observables and a background-only variant.

Example usage:
    from pluginscan.models.counting import CountingModel

    model = CountingModel(
        signal=[5.0, 10.0], background=[50.0, 20.0],
        background_uncertainty=0.1, observed=[58, 24]
    )
"""

from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
from scipy.special import gammaln

from ..fit.model import ModelState, Parameter, ToyModel


class CountingModel(ToyModel):
    """
    Poisson counting model with constrained backgrounds.

    Args:
        signal: Expected signal per bin for mu=1.
        background: Nominal background per bin.
        background_uncertainty: Relative background uncertainty, one value
            or one per bin.
        observed: Observed counts. Defaults to the rounded background.
        name: Model name.
        poi: Name of the signal strength parameter.
        mu_max: Upper limit of the signal strength.
    """

    def __init__(
        self,
        signal: Sequence[float] = (10.0,),
        background: Sequence[float] = (50.0,),
        background_uncertainty=0.1,
        observed: Optional[Sequence[float]] = None,
        name: str = "counting",
        poi: str = "mu",
        mu_max: float = 10.0
    ):
        self.signal = np.asarray(signal, dtype=float)
        self.background = np.asarray(background, dtype=float)
        if self.signal.shape != self.background.shape:
            raise ValueError("signal and background need the same number of bins")
        rel = np.broadcast_to(np.asarray(background_uncertainty, dtype=float), self.background.shape)
        if np.any(rel <= 0):
            raise ValueError("background uncertainties must be positive")
        self.sigma = rel * self.background
        self.bkg_names: List[str] = [f"b_{k}" for k in range(len(self.background))]
        self.gobs_names: List[str] = [f"b_obs_{k}" for k in range(len(self.background))]

        pars = [Parameter(
            name=poi, value=min(1.0, mu_max), min_val=0.0, max_val=mu_max,
            ranges={'free': (0.0, mu_max), 'phys': (0.0, mu_max)}
        )]
        for bname, b, s in zip(self.bkg_names, self.background, self.sigma):
            lo, hi = max(1e-6, b - 10 * s), b + 10 * s
            pars.append(Parameter(
                name=bname, value=float(b), min_val=lo, max_val=hi,
                ranges={'free': (lo, hi), 'phys': (lo, hi)}
            ))

        if observed is None:
            observed = np.round(self.background)
        super().__init__(
            name=name,
            poi=poi,
            state=ModelState(pars),
            observed_data=np.asarray(observed, dtype=float),
            observed_global_observables=dict(zip(self.gobs_names, self.background.tolist()))
        )

    def _expected(self, values: Mapping[str, float], mu: Optional[float] = None) -> np.ndarray:
        b = np.array([values[name] for name in self.bkg_names])
        if mu is None:
            mu = values[self.poi]
        return mu * self.signal + b

    def nll(self, values: Mapping[str, float], data) -> float:
        lam = self._expected(values)
        if np.any(lam <= 0):
            return np.inf
        n = np.asarray(data, dtype=float)
        poisson = np.sum(lam - n * np.log(lam) + gammaln(n + 1))
        b = np.array([values[name] for name in self.bkg_names])
        b_obs = np.array([self.global_observables[name] for name in self.gobs_names])
        constraint = 0.5 * np.sum(((b - b_obs) / self.sigma) ** 2)
        return float(poisson + constraint)

    def generate_toys(self, rng: np.random.Generator) -> np.ndarray:
        return rng.poisson(self._expected(self.state.values())).astype(float)

    @property
    def has_bkg_model(self) -> bool:
        return True

    def generate_bkg_toys(self, rng: np.random.Generator) -> np.ndarray:
        return rng.poisson(self._expected(self.state.values(), mu=0.0)).astype(float)

    def generate_global_observables(self, rng: np.random.Generator) -> Dict[str, float]:
        values = self.state.values()
        b = np.array([values[name] for name in self.bkg_names])
        return dict(zip(self.gobs_names, rng.normal(b, self.sigma).tolist()))
