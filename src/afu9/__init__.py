"""AFU-9 control plane core."""

__version__ = "0.1.0"
