"""envforge: verified, staged provisioning of named Linux environments.

A root filesystem image is downloaded and digest-checked, imported as a named
instance on the virtualization backend, bootstrapped with privileged package
commands and finally configured by an automation playbook. Every state change
is recorded in a registry and a hash-chained transition ledger.
"""

__version__ = "0.1.0"

from envforge.core.pipeline import ProvisioningPipeline
from envforge.cli.app import app as cli

__all__ = ["ProvisioningPipeline", "cli", "__version__"]
