"""Shared types, geometry helpers and logging setup."""
