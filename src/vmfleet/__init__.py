"""vmfleet — virtual machine lifecycle and reconciliation service."""

__version__ = "0.3.0"
