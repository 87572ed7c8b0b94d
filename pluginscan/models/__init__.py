"""Concrete models usable with the plugin scan."""

from .counting import CountingModel

__all__ = ['CountingModel']
