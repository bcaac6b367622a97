"""Hybrid brain: routes chat requests between a tool agent and a direct model."""
