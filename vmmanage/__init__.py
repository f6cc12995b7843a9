"""
vmmanage - search cached VMs and manage them through persistent sessions.

This package provides inventory search over a local VM cache and a session
supervisor that keeps one authenticated worker per VM alive, so that many
power and snapshot operations run without reconnecting for each one.
"""

from .main import main

__version__ = "1.0.0"
__all__ = ["main"]
