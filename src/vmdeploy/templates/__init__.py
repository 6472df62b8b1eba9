"""Bundled plan templates (read via importlib.resources)."""
