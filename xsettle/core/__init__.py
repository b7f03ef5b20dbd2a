"""Core primitives shared across the engine."""
