# shipline/background/__init__.py
"""
Background run processing system.

Exports:
    - BackgroundWorker: Sequential run processor
    - setup_signal_handlers: Graceful shutdown signal handling
    - ServerLifecycle: Startup recovery and shutdown coordination
"""

from shipline.background.lifecycle import ServerLifecycle
from shipline.background.signals import setup_signal_handlers
from shipline.background.worker import BackgroundWorker, final_state

__all__ = ["BackgroundWorker", "setup_signal_handlers", "ServerLifecycle", "final_state"]
