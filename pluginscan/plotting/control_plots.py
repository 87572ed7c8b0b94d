"""
Control plots of the plugin scan.

Drawn with matplotlib (Agg backend) after aggregation:
1. Per scan point: test statistic of background-only and signal plus
   background toys, with the background quantiles and the data value
2. The observed CLs curves with the expected band
3. The toy p-value next to the asymptotic one
4. Toy counts, failure and background fractions per scan point
5. The bootstrap p-value distribution with a Gaussian fit
"""

import os

import numpy as np
from scipy import stats

# Use Agg backend for non-interactive plotting
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from matplotlib.gridspec import GridSpec

from ..utils.stats import BAND_PROBS, empirical_quantiles

BAND_COLORS = {1: '#8EBA42', 2: '#FBC15E'}


def _save(fig, output_file: str):
    directory = os.path.dirname(output_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fig.savefig(output_file, bbox_inches='tight', dpi=150)
    print(f"Saved plot to {output_file}")
    plt.close(fig)


def plot_test_statistic_distributions(result, index: int, poi: str, output_file: str, bins: int = 50):
    """B and S+B test statistic histograms at one scan point.

    Args:
        result: PluginScanResult.
        index: Grid index.
        poi: Name of the scanned parameter.
        output_file: Output file path.
        bins: Number of histogram bins.
    """
    sb = result.sb_samples.get(index, np.array([]))
    bkg = result.bkg_samples.get(index, np.array([]))
    fig, ax = plt.subplots(figsize=(8, 6))

    upper = max([np.max(a) for a in (sb, bkg) if len(a)] + [result.observed[index], 1.0])
    edges = np.linspace(0, 1.05 * upper, bins + 1)
    if len(bkg):
        ax.hist(bkg, bins=edges, histtype='step', color='#348ABD', linewidth=2, label='B toys')
        for q in empirical_quantiles(bkg, BAND_PROBS):
            ax.axvline(q, color='#348ABD', linestyle=':', alpha=0.7)
    if len(sb):
        ax.hist(sb, bins=edges, histtype='step', color='#E24A33', linewidth=2, label='S+B toys')
    ax.axvline(result.observed[index], color='k', linestyle='--', linewidth=2, label='Data')

    ax.set_yscale('log')
    ax.set_xlabel(r'$q = \chi^2_{\rm scan} - \chi^2_{\rm free}$', fontsize=12)
    ax.set_ylabel('Toys', fontsize=12)
    ax.set_title(f'{poi} = {result.scanpoints[index]:.4g}', fontsize=12)
    ax.legend(loc='upper right', fontsize=9)
    _save(fig, output_file)


def plot_cls_band(result, poi: str, output_file: str, cl: float = 0.05):
    """Observed CLs, CLsFreq and the expected band."""
    x = result.scanpoints
    fig, ax = plt.subplots(figsize=(8, 6))

    ax.fill_between(x, result.cls_err2_dn, result.cls_err2_up, color=BAND_COLORS[2], label=r'Expected $\pm 2\sigma$')
    ax.fill_between(x, result.cls_err1_dn, result.cls_err1_up, color=BAND_COLORS[1], label=r'Expected $\pm 1\sigma$')
    ax.plot(x, result.cls_exp, 'k--', linewidth=2, label='Expected')
    ax.plot(x, result.cls_freq, 'k-', linewidth=3, label='Observed CLs (freq)')
    ax.plot(x, result.cls, '-', color='#E24A33', linewidth=1.5, label='Observed CLs')
    ax.axhline(cl, color='gray', linestyle=':', alpha=0.7)

    ax.set_xlabel(poi, fontsize=12)
    ax.set_ylabel('CLs', fontsize=12)
    ax.set_ylim(0, 1.05)
    ax.legend(loc='upper right', fontsize=9)
    _save(fig, output_file)


def plot_pvalue_curve(result, poi: str, output_file: str):
    """Toy p-value with binomial errors next to the asymptotic p-value."""
    x = result.scanpoints
    fig, ax = plt.subplots(figsize=(8, 6))
    ax.errorbar(x, result.pvalue, yerr=result.pvalue_err, fmt='o-', color='k', markersize=4, label='Plugin')
    ax.plot(x, result.prob_pvalue, '--', color='#348ABD', linewidth=2, label='Asymptotic')
    ax.axvline(x[result.best_index], color='gray', linestyle='--', alpha=0.5, label='Best fit')
    ax.axhline(0.3173, color='#348ABD', linestyle=':', alpha=0.7)
    ax.axhline(0.0455, color='#E24A33', linestyle=':', alpha=0.7)
    ax.set_xlabel(poi, fontsize=12)
    ax.set_ylabel('p-value', fontsize=12)
    ax.set_ylim(0, 1.05)
    ax.legend(loc='upper right', fontsize=9)
    _save(fig, output_file)


def plot_toy_diagnostics(result, poi: str, output_file: str):
    """Toy counts and fractions per scan point."""
    x = result.scanpoints
    fig = plt.figure(figsize=(10, 8))
    gs = GridSpec(2, 2, hspace=0.3, wspace=0.3)
    panels = [
        (result.n_all, 'valid toys'),
        (result.n_better, 'toys with q >= data'),
        (result.frac_good, 'fraction of good toys'),
        (result.frac_background, 'fraction of neg. test stat toys'),
    ]
    for k, (values, label) in enumerate(panels):
        ax = fig.add_subplot(gs[k // 2, k % 2])
        ax.step(x, values, where='mid', color='k')
        ax.set_xlabel(poi, fontsize=11)
        ax.set_ylabel(label, fontsize=11)
    _save(fig, output_file)


def plot_bootstrap(result, output_file: str, bins: int = 50):
    """Bootstrap p-values with a Gaussian fit.

    Args:
        result: BootstrapResult.
        output_file: Output file path.
        bins: Number of histogram bins.
    """
    mean, sigma = stats.norm.fit(result.pvalues)
    fig, ax = plt.subplots(figsize=(8, 6))
    ax.hist(result.pvalues, bins=bins, density=True, histtype='stepfilled', alpha=0.5, color='#348ABD',
            label=f'{len(result.pvalues)} samples')
    if sigma > 0:
        xs = np.linspace(mean - 4 * sigma, mean + 4 * sigma, 200)
        ax.plot(xs, stats.norm.pdf(xs, mean, sigma), 'k-', linewidth=2,
                label=rf'Gauss: $\mu$={mean:.4g}, $\sigma$={sigma:.2g}')
    ax.set_xlabel('p-value', fontsize=12)
    ax.set_ylabel('Density', fontsize=12)
    ax.set_title(f'Scan point {result.scanpoint:.4g} ({result.n_toys} toys)', fontsize=12)
    ax.legend(loc='upper right', fontsize=9)
    _save(fig, output_file)


def make_control_plots(result, config):
    """Draw all aggregation control plots of a scan."""
    poi = config.scan.poi
    for index in sorted(result.sb_samples):
        plot_test_statistic_distributions(
            result, index, poi, config.plot_path(f"{poi}_teststat_point{index}")
        )
    plot_cls_band(result, poi, config.plot_path(f"{poi}_cls"))
    plot_pvalue_curve(result, poi, config.plot_path(f"{poi}_pvalue"))
    plot_toy_diagnostics(result, poi, config.plot_path(f"{poi}_toys"))
