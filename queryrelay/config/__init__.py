"""Typed configuration sections."""
