"""
sandboxer - Volume provisioning and runtime bring-up for development sandboxes.

Installs a fixed sequence of heavyweight dependencies onto a persistent volume
exactly once, and brings a restarted container back to a reachable state.
"""

__version__ = "0.1.0"
__author__ = "Sandbox Platform Team"


__all__ = ["Config", "load_config"]

from .config import Config, load_config
