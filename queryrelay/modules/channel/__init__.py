"""
Channel Module - Black Box Interface

Purpose: Temporary, isolated holding area for one command's result rows
Interface: create_for_command(), append_row(), finalize(), list_rows(), teardown(), teardown_for_principal(), teardown_all()
Hidden: Key derivation, collection layout, tombstones

Teardown is the single deletion capability; every cleanup policy calls it.
"""

from .channel import (
    ALL_PRINCIPALS,
    CHANNELS_COLLECTION,
    RESERVED_ID_CHARS,
    TOMBSTONES_COLLECTION,
    ChannelHandle,
    ResultChannelModule,
    TeardownReport,
    derive_key,
    parse_locator,
)

__all__ = [
    "ALL_PRINCIPALS",
    "CHANNELS_COLLECTION",
    "RESERVED_ID_CHARS",
    "TOMBSTONES_COLLECTION",
    "ChannelHandle",
    "ResultChannelModule",
    "TeardownReport",
    "derive_key",
    "parse_locator",
]
