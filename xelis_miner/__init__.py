"""
Xelis Stratum CPU miner package.

This module wires the Stratum connection, message router and search threads
together and exposes the `XelisMiner` coordinator used by the CLI entry point.
"""

from .miner import XelisMiner

__all__ = ["XelisMiner"]
