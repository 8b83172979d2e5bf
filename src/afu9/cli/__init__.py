"""Command line interface for the AFU-9 control plane."""
