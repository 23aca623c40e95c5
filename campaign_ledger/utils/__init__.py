"""Shared utilities: identifiers, keyed locks, logging, worker pool."""
