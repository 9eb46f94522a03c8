"""
Rotation Scheduler: physician master calendar assignment and trade negotiation.
Collects availability and rotation preferences, builds the week x rotation
draft calendar, auto-fills it with a greedy heuristic and brokers trades
once the calendar is published.
"""

__version__ = "1.0.0"
