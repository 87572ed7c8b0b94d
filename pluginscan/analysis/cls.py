"""
CLs quantities from toy test statistic samples.

The expected band is read off the background-only test statistic
distribution: at each of the five standard quantiles the fraction of
signal plus background toys above it is CLsb, and CLs = CLsb / CLb where
CLb is the quantile's own tail probability.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from ..utils.stats import BAND_PROBS, binomial_error, chi2_quantile, empirical_quantiles, frac_above

BAND_CLB = 1.0 - BAND_PROBS


@dataclass(frozen=True)
class ExpectedBand:
    """Expected CLs at the five band quantiles, ordered as ``BAND_PROBS``."""
    quantiles: np.ndarray
    clsb: np.ndarray
    clb: np.ndarray
    cls: np.ndarray

    @property
    def median(self) -> float:
        return float(self.cls[2])

    @property
    def err1_up(self) -> float:
        return float(self.cls[1])

    @property
    def err1_dn(self) -> float:
        return float(self.cls[3])

    @property
    def err2_up(self) -> float:
        return float(self.cls[0])

    @property
    def err2_dn(self) -> float:
        return float(self.cls[4])


def expected_cls_band(bkg_samples: Sequence[float], sb_samples: Sequence[float]) -> ExpectedBand:
    """Expected CLs band from background-only and signal plus background samples.

    Args:
        bkg_samples: Test statistic of the background-only toys.
        sb_samples: Test statistic of the signal plus background toys.

    Returns:
        ExpectedBand with CLs capped at 1.
    """
    quantiles = empirical_quantiles(bkg_samples, BAND_PROBS)
    clsb = np.array([frac_above(sb_samples, q) for q in quantiles])
    cls = np.minimum(clsb / BAND_CLB, 1.0)
    return ExpectedBand(quantiles=quantiles, clsb=clsb, clb=BAND_CLB.copy(), cls=cls)


def data_clb(pvalue: float, bkg_samples: Sequence[float]) -> Tuple[float, float, float]:
    """CLb of the data at a scan point.

    The p-value is turned into the equivalent one degree of freedom test
    statistic, and CLb is the fraction of background-only toys at or above
    it.

    Returns:
        (data test statistic, CLb, CLb error). The test statistic is inf and
        CLb zero when the p-value is zero.
    """
    samples = np.asarray(bkg_samples, dtype=float)
    if pvalue <= 0 or samples.size == 0:
        return float('inf'), 0.0, 0.0
    stat = float(chi2_quantile(1.0 - pvalue, 1))
    clb = float(np.count_nonzero(samples >= stat)) / samples.size
    return stat, clb, float(binomial_error(clb, samples.size))


def cls_freq(
    pvalue: float,
    pvalue_err: float,
    clb: float,
    clb_err: float,
    at_or_below_best: bool
) -> Tuple[float, float]:
    """Frequentist CLs of the data, p / CLb, with its edge cases.

    Args:
        pvalue: Toy p-value (CLsb) of the data.
        pvalue_err: Its binomial error.
        clb: CLb of the data.
        clb_err: Its binomial error.
        at_or_below_best: The scan point is at or below the best fit point.

    Returns:
        (value, error). The value is never above 1.
    """
    if pvalue > 0 and (clb <= 0 or pvalue / clb >= 1.0):
        return 1.0, 0.0
    if pvalue <= 0:
        return pvalue, pvalue_err
    if at_or_below_best:
        return 1.0, 0.0
    ratio = pvalue / clb
    err = ratio * np.sqrt((pvalue_err / pvalue) ** 2 + (clb_err / clb) ** 2)
    return float(ratio), float(err)
