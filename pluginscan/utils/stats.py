"""
Statistics helpers shared by the scan, the aggregation and the bootstrap.

Test statistics are differences of minimised -2 log L values (chi2 in the
naming used throughout the package). All functions accept scalars or numpy
arrays where that makes sense.
"""

import sys
from typing import Sequence

import numpy as np
from scipy import stats

# Fits with |-2 log L| at or above this value are failed fits, not minima.
SENTINEL_CHI2 = 1e27


def chi2_prob(x, ndof: int = 1):
    """Upper tail probability of a chi2 distribution (TMath::Prob)."""
    return stats.chi2.sf(x, ndof)


def chi2_quantile(p, ndof: int = 1):
    """Inverse of ``1 - chi2_prob``: the value with lower tail probability ``p``."""
    return stats.chi2.ppf(p, ndof)


def p_value_test_statistic(test_statistic: float, verbose: bool = False) -> float:
    """Asymptotic p-value of a one degree of freedom test statistic.

    Non-positive values give exactly 1. A negative value means the fit at the
    scan point found a higher likelihood than the free fit, which is only
    expected from tiny underflows at the best fit point.

    Args:
        test_statistic: chi2 difference between constrained and free fit.
        verbose: Print a warning for negative values.

    Returns:
        p-value in [0, 1].
    """
    if test_statistic > 0:
        return float(chi2_prob(test_statistic, 1))
    if test_statistic < 0 and verbose:
        print(
            f"Warning: negative test statistic {test_statistic:.6g}, forcing it to zero. "
            f"An equal upward fluctuation corresponds to p={chi2_prob(abs(test_statistic), 1):.6g}",
            file=sys.stderr
        )
    return 1.0


def clip_test_statistic(test_statistic, scanbest, scanpoint):
    """Apply the one-sided convention to a test statistic.

    A positive test statistic is set to zero when the free fit found its
    best value below the scan coordinate.

    Args:
        test_statistic: Raw chi2 difference (constrained - free).
        scanbest: Best fit value of the parameter of interest.
        scanpoint: Scan coordinate.

    Returns:
        Clipped test statistic, same shape as the input.
    """
    q = np.asarray(test_statistic, dtype=float)
    clipped = np.where((q > 0) & (np.asarray(scanbest) < np.asarray(scanpoint)), 0.0, q)
    if clipped.ndim == 0:
        return float(clipped)
    return clipped


def upper_limit_test_statistic(test_statistic, scanbest, scanpoint):
    """Test statistic for upper limits, as sampled for the expected CLs band.

    The value is kept when the best fit lies at or below the scan coordinate
    and set to zero otherwise: an excess above the tested value is not
    evidence against it.

    Args:
        test_statistic: Raw chi2 difference (constrained - free).
        scanbest: Best fit value of the parameter of interest.
        scanpoint: Scan coordinate.

    Returns:
        Test statistic, same shape as the input.
    """
    q = np.asarray(test_statistic, dtype=float)
    limited = np.where(np.asarray(scanbest) > np.asarray(scanpoint), 0.0, q)
    if limited.ndim == 0:
        return float(limited)
    return limited


def is_sentinel(chi2) -> bool:
    """True for the large negative values some engines report on failure."""
    return chi2 <= -SENTINEL_CHI2


def binomial_error(p, n):
    """Binomial standard error sqrt(p(1-p)/n)."""
    return np.sqrt(p * (1.0 - p) / n)


def frac_above(values: Sequence[float], threshold: float) -> float:
    """Fraction of ``values`` strictly above ``threshold``."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return float('nan')
    return float(np.count_nonzero(arr > threshold)) / arr.size


def frac_at_or_above(values: Sequence[float], threshold: float) -> float:
    """Fraction of ``values`` at or above ``threshold``."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return float('nan')
    return float(np.count_nonzero(arr >= threshold)) / arr.size


def empirical_quantiles(values: Sequence[float], probs: Sequence[float]) -> np.ndarray:
    """Empirical quantiles (linear interpolation between order statistics)."""
    return np.quantile(np.asarray(values, dtype=float), np.asarray(probs, dtype=float))


def importance_factor(pvalue: float, floor: float = 0.1) -> float:
    """Fraction of the nominal toys to run at a point with asymptotic ``pvalue``.

    Toys are concentrated where the p-value is around a few percent, where the
    plugin result matters for interval edges. Far in the tails (or close to
    p=1) the asymptotic result is already decisive and fewer toys are run.

    Args:
        pvalue: Asymptotic p-value of the data at the scan point.
        floor: Smallest fraction returned.

    Returns:
        Factor in [floor, 1].
    """
    if not np.isfinite(pvalue) or pvalue <= 0:
        return floor
    x = -np.log10(min(pvalue, 1.0))
    factor = np.exp(-0.5 * (x - 1.3) ** 2)
    return float(min(1.0, max(floor, factor)))


# Quantile probabilities for -2 sigma, -1 sigma, median, +1 sigma, +2 sigma
# of a test statistic distribution.
BAND_PROBS = np.array([
    float(chi2_prob(4, 1)),
    float(chi2_prob(1, 1)),
    0.5,
    1.0 - float(chi2_prob(1, 1)),
    1.0 - float(chi2_prob(4, 1)),
])
