"""
Stockkeeper Core Package

Reliable event outbox and timed stock-reservation coordinator.
"""

from . import database
from . import outbox
from . import reservations

__all__ = ["database", "outbox", "reservations"]

__version__ = "1.0.0"
