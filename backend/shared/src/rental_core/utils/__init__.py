"""Shared utilities for the rental payments backend."""
