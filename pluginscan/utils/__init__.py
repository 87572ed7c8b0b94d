"""
Utilities module for plugin scans.

This module provides:
- Configuration management
- The error taxonomy
- Statistics helpers
- Prior scan snapshots (``pluginscan.utils.prob_scan``)
- Toy record persistence (``pluginscan.utils.record_store``)
"""

from .config import ModelConfig, PluginScanConfig, RunSelection, ScanGrid
from .errors import NullFitResultError, PluginScanError, PreconditionError

__all__ = [
    'ModelConfig', 'PluginScanConfig', 'RunSelection', 'ScanGrid',
    'NullFitResultError', 'PluginScanError', 'PreconditionError'
]
