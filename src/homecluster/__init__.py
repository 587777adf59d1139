"""Talos Linux homelab cluster bootstrap tooling."""

__version__ = "0.1.0"
