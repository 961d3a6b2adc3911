"""Demo: simulator and main entry point."""

from .simulator import main, run_main, run_simulation

__all__ = [
    "main",
    "run_main",
    "run_simulation",
]
