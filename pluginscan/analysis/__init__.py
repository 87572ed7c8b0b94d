"""
Analysis module - aggregation of plugin toys and bootstrap.
"""

from .aggregator import PluginAggregator, PluginScanResult, aggregate_runs
from .bootstrap import BootstrapEstimator, BootstrapResult
from .cls import ExpectedBand, cls_freq, data_clb, expected_cls_band

__all__ = [
    'PluginAggregator', 'PluginScanResult', 'aggregate_runs',
    'BootstrapEstimator', 'BootstrapResult',
    'ExpectedBand', 'cls_freq', 'data_clb', 'expected_cls_band'
]
