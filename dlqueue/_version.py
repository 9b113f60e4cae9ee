"""
Defines the application's version string.

This is the single source of truth for the application's version number.
It is reported by `dlqueue --version` and mirrored in pyproject.toml.
"""

__version__ = "0.4.0"
