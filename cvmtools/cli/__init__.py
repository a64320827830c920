"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import CvmToolsModalCLI, main

__all__ = ['CvmToolsModalCLI', 'main']
