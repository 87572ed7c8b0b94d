"""Plotting module - matplotlib control plots of the plugin scan."""

from .control_plots import make_control_plots, plot_bootstrap

__all__ = ['make_control_plots', 'plot_bootstrap']
