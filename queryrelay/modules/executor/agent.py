#!/usr/bin/env python3
"""
Reference query agent.

Polls the shared store for pending commands addressed to its target, claims
them one at a time through the executor binding, and runs them against a
local SQLite database.
"""

import asyncio
import logging
import os
import sys
from typing import Optional

from queryrelay.config.provider import EnvConfigProvider
from queryrelay.logging_config import setup_logging
from queryrelay.modules.channel import ResultChannelModule
from queryrelay.modules.observer import CancellationToken
from queryrelay.modules.registry import StoreTemplateRepository
from queryrelay.modules.storage import StorageModule

from .binding import ExecutorBinding
from .runner import QueryRunner, SqliteQueryRunner

logger = logging.getLogger("queryrelay.agent")


class QueryAgent:
    """Agent that executes pending commands for one target."""

    def __init__(
        self,
        binding: ExecutorBinding,
        runner: QueryRunner,
        poll_interval: float = 2.0,
    ):
        """
        Initialize agent.

        Args:
            binding: Executor binding for this agent's principal and target
            runner: Executes resolved query text
            poll_interval: Seconds between polls when idle
        """
        self.binding = binding
        self.runner = runner
        self.poll_interval = poll_interval
        self.processed = 0

    async def run_once(self) -> int:
        """
        Process every currently pending command once.

        Returns:
            Number of commands this agent claimed and brought to a terminal state
        """
        handled = 0
        for record in await self.binding.pending_commands():
            try:
                result = await self.binding.process(record, self.runner)
            except Exception as e:
                # One bad record must not stall the rest of the queue
                logger.error(f"Error processing command {record.id}: {e}")
                continue
            if result is not None:
                handled += 1
        self.processed += handled
        return handled

    async def run_forever(self, stop: Optional[CancellationToken] = None) -> None:
        """
        Main agent loop.

        Polls until the stop token is cancelled. Store outages are logged and
        retried on the next poll.
        """
        stop = stop or CancellationToken()
        logger.info(
            f"Agent {self.binding.principal_id} serving target {self.binding.target_id} "
            f"(poll every {self.poll_interval}s)"
        )

        while not stop.cancelled:
            try:
                handled = await self.run_once()
                if handled:
                    logger.debug(f"Handled {handled} commands")
            except Exception as e:
                logger.error(f"Poll failed: {e}")
                logger.info(f"Retrying in {self.poll_interval} seconds...")

            if await stop.wait(self.poll_interval):
                break

        logger.info(f"Agent {self.binding.principal_id} stopped after {self.processed} commands")


async def _run() -> None:
    provider = EnvConfigProvider()
    store_config = provider.get_store_config()
    agent_config = provider.get_agent_config()

    storage = StorageModule(store_config.url, store_config.password, backend=store_config.backend)
    store = await storage.connect()
    runner = SqliteQueryRunner(agent_config.database)

    binding = ExecutorBinding(
        store,
        ResultChannelModule(store),
        principal_id=agent_config.principal_id,
        target_id=agent_config.target_id,
        template_store=StoreTemplateRepository(store),
        max_attempts=agent_config.max_attempts,
    )
    agent = QueryAgent(binding, runner, poll_interval=agent_config.poll_interval)

    try:
        await agent.run_forever()
    finally:
        runner.close()
        await storage.disconnect()


def main():
    """Main entry point."""
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Agent stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
