"""Loom: branching conversation store for LLM chat clients."""

__version__ = "0.1.0"
