"""
Executor Module - Black Box Interface

Purpose: Agent-side half of the protocol
Interface: ExecutorBinding (pending_commands, claim, execute, process), QueryAgent, QueryRunner
Hidden: Conditional claim, retry/backoff, partial channel cleanup

The binding is all an agent needs; QueryAgent and SqliteQueryRunner are the
reference agent built on it.
"""

from .agent import QueryAgent
from .binding import ExecutorBinding
from .runner import QueryResult, QueryRunner, SqliteQueryRunner

__all__ = ["ExecutorBinding", "QueryAgent", "QueryResult", "QueryRunner", "SqliteQueryRunner"]
