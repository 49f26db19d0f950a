"""CLI command groups registered by ``main.py``."""
