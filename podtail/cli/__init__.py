"""podtail command-line interface.

Exposes:
    cli -- Click command entry point (registered as ``podtail`` script).
"""

from podtail.cli.main import cli

__all__ = ["cli"]
