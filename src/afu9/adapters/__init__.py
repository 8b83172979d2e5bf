"""Adapters wrapping opaque external collaborators."""
