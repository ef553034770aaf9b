"""
Authentication Module - Black Box Interface

Purpose: Validate API keys
Interface: verify_api_key(), verify_pull_key(), extract_service_identity()
Hidden: Key storage, comparison, key formats

This module can be completely replaced with any other auth implementation
(OAuth, JWT, external service) without affecting other modules.
"""

from .auth import AuthModule

__all__ = ["AuthModule"]
