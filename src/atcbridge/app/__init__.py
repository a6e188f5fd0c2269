"""Application package for the ATC network bridge worker."""

from .bridge import AtcBridge

__all__ = ["AtcBridge"]
