"""
shipline — package root

File: src/shipline/__init__.py
Last updated: 2026-10-18

Purpose
- Package root for the shipline CI pipeline execution core.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Keep the public surface small; subpackages own their exports.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
