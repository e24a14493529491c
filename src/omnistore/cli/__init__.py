"""
CLI layer for omnistore.

Provides a Typer application whose commands delegate to the engine
registry (``omnistore.core.adapters.registry``). This package handles only
terminal transport: argument parsing, coloured output and table formatting.

Entry point::

    omnistore --help
"""

from omnistore.cli.app import app

__all__ = ["app"]
