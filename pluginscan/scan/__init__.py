"""
Scan module - toy generation and the plugin toy loop.

Example:
    from pluginscan.scan import PluginScanRunner
    from pluginscan.utils.config import PluginScanConfig

    config = PluginScanConfig.from_yaml('configs/counting_example.yaml')
    PluginScanRunner(config.with_overrides(nrun=1)).run()
"""

from .driver import ScanPointDriver
from .runner import PluginScanRunner
from .toys import Toy, ToyGenerator

__all__ = ['ScanPointDriver', 'PluginScanRunner', 'Toy', 'ToyGenerator']
