# kiln/__init__.py
"""kiln - formula-driven build orchestrator."""

__version__ = "1.0.0"
