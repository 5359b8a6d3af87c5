"""Utilities shared by Loom components."""
