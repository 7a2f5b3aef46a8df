"""MoneySync CLI package.

This package provides the command-line interface for running sync cycles,
inspecting the change queue and operating the background job queue.
"""

from .main import app, main

__all__ = ["app", "main"]
