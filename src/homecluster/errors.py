"""Exceptions raised by the bootstrap phases."""

from typing import Optional


class BootstrapError(RuntimeError):
    """A fatal error that aborts the bootstrap run.

    Args:
        message: Human readable reason
        hint: Manual command an operator can run to retry just the failed step
    """

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class ToolNotFoundError(BootstrapError):
    """A required command line tool is not installed."""


class InventoryError(BootstrapError):
    """The node inventory file is missing or invalid."""


class ImageError(BootstrapError):
    """Boot media could not be downloaded or verified."""


class ProvisioningError(BootstrapError):
    """Terraform failed or produced unusable outputs."""


class DiscoveryError(BootstrapError):
    """Not every expected node could be found on the network."""


class ConfigGenerationError(BootstrapError):
    """Machine configuration could not be generated."""


class QuorumError(BootstrapError):
    """The control plane could not be bootstrapped."""


class AddonError(BootstrapError):
    """Post-bootstrap installation (CNI, GitOps) failed."""
