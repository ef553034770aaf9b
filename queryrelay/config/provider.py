"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class StoreConfig:
    """Shared store configuration."""
    backend: str
    url: str
    password: Optional[str]


@dataclass
class AgentConfig:
    """Reference agent configuration."""
    principal_id: str
    target_id: str
    poll_interval: float
    database: str
    max_attempts: int


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_store_config(self) -> StoreConfig:
        """Get shared store configuration."""
        ...

    def get_agent_config(self) -> AgentConfig:
        """Get reference agent configuration."""
        ...


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_store_config(self) -> StoreConfig:
        """Get shared store configuration from environment variables."""
        url = os.getenv("REDIS_URL")
        if not url:
            port = os.getenv("REDIS_PORT", "6379")
            if port.startswith("tcp://"):
                port = port.split(":")[-1]
            url = f"redis://{os.getenv('REDIS_HOST', 'localhost')}:{port}/{os.getenv('REDIS_DB', '0')}"

        return StoreConfig(
            backend=os.getenv("STORE_BACKEND", "redis").lower(),
            url=url,
            password=os.getenv("REDIS_PASSWORD"),
        )

    def get_agent_config(self) -> AgentConfig:
        """Get reference agent configuration from environment variables."""
        principal_id = os.getenv("AGENT_PRINCIPAL_ID")
        target_id = os.getenv("AGENT_TARGET_ID")
        if not principal_id or not target_id:
            raise ValueError("AGENT_PRINCIPAL_ID and AGENT_TARGET_ID are required for the agent")

        return AgentConfig(
            principal_id=principal_id,
            target_id=target_id,
            poll_interval=float(os.getenv("AGENT_POLL_INTERVAL", "2.0")),
            database=os.getenv("AGENT_DATABASE", ":memory:"),
            max_attempts=int(os.getenv("CLAIM_MAX_ATTEMPTS", "3")),
        )
