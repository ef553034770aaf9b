"""
Authentication module for the QueryRelay API.

Validates API keys presented in the X-API-Key header. Keys are configured
with an optional service identity; the identity becomes the default issuer
of commands submitted with that key.
"""

import logging
import os
import secrets
from datetime import UTC, datetime
from typing import Dict, Optional, Tuple

logger = logging.getLogger("queryrelay.auth")
audit_logger = logging.getLogger("queryrelay.auth.audit")


class AuthModule:
    """
    Authentication module for validating credentials.

    Two key sets are recognised: the general API keys (API_KEYS) and the
    bulk pull key (PULL_API_KEY), which only opens the pull endpoint.
    """

    @staticmethod
    def parse_api_keys(api_keys_env: Optional[str]) -> Dict[str, Optional[str]]:
        """
        Parse API_KEYS into a key -> service identity map.

        Example:
            >>> AuthModule.parse_api_keys("abc123,control-plane:def456")
            {'abc123': None, 'def456': 'control-plane'}
        """
        keys: Dict[str, Optional[str]] = {}
        for entry in (api_keys_env or "").split(","):
            entry = entry.strip()
            if not entry:
                continue

            # Check for service:key format
            if ":" in entry:
                service, key = entry.split(":", 1)
                keys[key.strip()] = service.strip() or None
            else:
                keys[entry] = None
        return keys

    def __init__(self, api_keys_env: Optional[str] = None, pull_api_key: Optional[str] = None):
        """
        Initialize auth module.

        Args:
            api_keys_env: API_KEYS value (read from the environment when None)
            pull_api_key: PULL_API_KEY value (read from the environment when None)
        """
        if api_keys_env is None:
            api_keys_env = os.environ.get("API_KEYS", "")
        if pull_api_key is None:
            pull_api_key = os.environ.get("PULL_API_KEY") or None

        # Format: API_KEYS="key1,service1:key2,service2:key3"
        self.api_keys: Dict[str, Optional[str]] = self.parse_api_keys(api_keys_env)
        self.pull_api_key = pull_api_key

        if not self.api_keys:
            logger.warning("No API keys configured; every authenticated request will be rejected")

    def _match(self, api_key: str) -> Tuple[bool, Optional[str]]:
        # Compare against every key so timing does not reveal a partial match
        matched, identity = False, None
        for candidate, service in self.api_keys.items():
            if secrets.compare_digest(api_key.encode("utf-8"), candidate.encode("utf-8")):
                matched, identity = True, service
        return matched, identity

    async def verify_api_key(self, api_key: Optional[str]) -> Tuple[bool, Optional[str]]:
        """
        Verify an API key.

        Args:
            api_key: API key from X-API-Key header

        Returns:
            Tuple of (is_valid, service_identity)
        """
        if not api_key:
            return False, None

        is_valid, service_identity = self._match(api_key)
        self._log_event(
            "api_key_verified" if is_valid else "api_key_rejected",
            {"service_identity": service_identity},
        )
        return is_valid, service_identity

    async def verify_pull_key(self, api_key: Optional[str]) -> bool:
        """
        Verify a key for the bulk pull endpoint.

        Accepts the dedicated pull key or any general API key.
        """
        if not api_key:
            return False

        if self.pull_api_key and secrets.compare_digest(
            api_key.encode("utf-8"), self.pull_api_key.encode("utf-8")
        ):
            self._log_event("pull_key_verified", {})
            return True

        is_valid, _ = await self.verify_api_key(api_key)
        return is_valid

    async def extract_service_identity(self, api_key: str) -> Optional[str]:
        """Service identity for an API key, or None."""
        _, identity = self._match(api_key)
        return identity

    def _log_event(self, event_type: str, data: dict, correlation_id: Optional[str] = None):
        """
        Log security event for audit with optional correlation ID.

        Args:
            event_type: Type of security event
            data: Event data
            correlation_id: Optional correlation ID for request tracing
        """
        audit_logger.info(
            f"{event_type} data={data} correlation_id={correlation_id} "
            f"at={datetime.now(UTC).isoformat()}"
        )
