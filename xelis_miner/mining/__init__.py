"""
Xelis Mining Package

Low-level pieces shared by the Stratum client and the worker threads: the
112-byte work layout and nonce partitioning, the hash oracle loader, the
target arithmetic and nonce-search loop, and the error taxonomy.

Exports
-------
__version__ : str
    Semantic version string for the miner.
"""

from .version import __version__  # re-export

__all__ = ["__version__"]
