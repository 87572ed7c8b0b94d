"""
Outcome of a single fit.

Every fit of the scan ends up as a ``FitOutcome``. The ``kind`` tag replaces
status code cascades: decisions and diagnostics look at the tag, while the
numeric status is what gets written to the record store.
"""

import enum
import math
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

# Status written for fits whose minimum is not a finite number.
INVALID_STATUS = -99


class OutcomeKind(enum.Enum):
    CONVERGED = "converged"
    NON_CONVERGED = "non-converged"
    NON_FINITE = "non-finite"
    NEGATIVE_TEST_STATISTIC = "negative test statistic"


@dataclass(frozen=True)
class FitOutcome:
    """
    Result of one call into the fit engine.

    Attributes:
        kind: Classification of the result.
        status: Status as recorded. ``INVALID_STATUS`` for non-finite minima,
            the optimizer status otherwise.
        raw_status: Status reported by the optimizer.
        cov_quality: Covariance matrix quality code.
        chi2: Twice the minimised negative log-likelihood.
        strategy: Optimizer strategy that produced the result.
        values: Parameter values at the minimum.
        test_statistic: chi2 difference to the constrained fit, for free fits
            whose test statistic has been checked.
    """
    kind: OutcomeKind
    status: int
    raw_status: int
    cov_quality: int
    chi2: float
    strategy: int
    values: Dict[str, float] = field(default_factory=dict)
    test_statistic: Optional[float] = None

    @classmethod
    def from_result(
        cls,
        min_nll: float,
        status: int,
        cov_quality: int,
        strategy: int,
        values: Dict[str, float]
    ) -> 'FitOutcome':
        """Classify a raw engine result."""
        chi2 = 2.0 * min_nll
        if not math.isfinite(chi2):
            kind, recorded = OutcomeKind.NON_FINITE, INVALID_STATUS
        elif status != 0:
            kind, recorded = OutcomeKind.NON_CONVERGED, status
        else:
            kind, recorded = OutcomeKind.CONVERGED, status
        return cls(
            kind=kind,
            status=recorded,
            raw_status=status,
            cov_quality=cov_quality,
            chi2=chi2,
            strategy=strategy,
            values=dict(values)
        )

    @property
    def converged(self) -> bool:
        """True for a converged fit with a finite minimum."""
        return self.kind is OutcomeKind.CONVERGED

    @property
    def finite(self) -> bool:
        return math.isfinite(self.chi2)

    def with_test_statistic(self, chi2_constrained: float) -> 'FitOutcome':
        """Attach the test statistic and re-tag the fit if it is negative.

        Only converged fits are re-tagged. The recorded status is left alone.
        """
        q = chi2_constrained - self.chi2
        if self.kind is OutcomeKind.CONVERGED and q < 0:
            return replace(self, kind=OutcomeKind.NEGATIVE_TEST_STATISTIC, test_statistic=q)
        return replace(self, test_statistic=q)


def describe_outcome(outcome: FitOutcome, label: str = "fit") -> str:
    """One line diagnostic for a fit outcome."""
    head = f"{label} (strategy {outcome.strategy})"
    if outcome.kind is OutcomeKind.CONVERGED:
        return f"{head}: converged, chi2={outcome.chi2:.6g}, covQual={outcome.cov_quality}"
    if outcome.kind is OutcomeKind.NON_CONVERGED:
        return (f"{head}: not converged, status={outcome.raw_status}, "
                f"chi2={outcome.chi2:.6g}, covQual={outcome.cov_quality}")
    if outcome.kind is OutcomeKind.NON_FINITE:
        return (f"{head}: non-finite minimum ({outcome.chi2}), optimizer status "
                f"{outcome.raw_status} replaced by {INVALID_STATUS}")
    return (f"{head}: converged but test statistic is negative "
            f"(q={outcome.test_statistic:.6g}, chi2={outcome.chi2:.6g})")
