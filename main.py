"""Convenience entry point to run the TimeVault command line.

Allows running ``python main.py send ...`` from the project root without
installing the package.
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure the src/ directory is on sys.path so `import timevault` works
ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from timevault.frontend.cli.app import main


if __name__ == "__main__":
    sys.exit(main())
