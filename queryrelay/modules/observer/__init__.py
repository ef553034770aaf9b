"""
Observer Module - Black Box Interface

Purpose: Requester-side watch of a command and discovery of its results
Interface: watch(), discover_channel(), subscribe_rows(), observe()
Hidden: Push/pull mechanics, fallback discovery chain, column inference

Detaching never deletes data; teardown is always an explicit caller decision.
"""

from .observer import (
    WATCH_PULL,
    WATCH_PUSH,
    CancellationToken,
    ColumnTracker,
    Observation,
    RowSubscription,
    StatusObserver,
)

__all__ = [
    "WATCH_PULL",
    "WATCH_PUSH",
    "CancellationToken",
    "ColumnTracker",
    "Observation",
    "RowSubscription",
    "StatusObserver",
]
