"""Entry point for `python -m podtail`.

Usage:
    python -m podtail [POD_QUERY] [OPTIONS]
"""

from __future__ import annotations

from podtail.cli import cli

cli(prog_name="podtail")
