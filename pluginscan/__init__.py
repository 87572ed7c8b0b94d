"""
pluginscan - toy Monte Carlo "plugin" hypothesis test scans.

For each point of a one dimensional scan of a parameter of interest, toys
are generated at the nuisance parameters of the constrained data fit and
refitted with the parameter fixed and free. The resulting test statistic
distributions give plugin p-values, CLs curves with expected bands and a
goodness of fit of the best fit point.
"""

__version__ = "0.1.0"
