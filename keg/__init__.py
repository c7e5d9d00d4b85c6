"""
keg package

This package installs software from declarative formulas (a small Homebrew-style
package processor) as a CLI-first utility.

Key responsibilities are split across modules:
- `formula_parser.py`: parse `.rb` / YAML formulas into a typed descriptor
- `resolver.py`: dependency install order against sibling formula files
- `fetcher.py`: archive downloads and sha256 verification
- `installer.py`: all-or-nothing copy of declared files into a versioned prefix
- `renderer.py`: caveat and test-command templates
- `smoke.py`: post-install smoke test
- `pipeline.py`: the sequential install pipeline
- `cli.py`: CLI entrypoint
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
