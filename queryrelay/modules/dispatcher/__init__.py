"""
Dispatcher Module - Black Box Interface

Purpose: Requester-side command submission
Interface: submit(), get(), derived_channel_key(), delete()
Hidden: Payload validation, record layout, id assignment

Submission never waits for execution; callers watch the record separately.
"""

from .dispatcher import Dispatcher

__all__ = ["Dispatcher"]
