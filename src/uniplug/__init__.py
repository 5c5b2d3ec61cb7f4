"""uniplug - plugin registry client and installer for uniconv."""

__version__ = "0.4.0"
