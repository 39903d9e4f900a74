#!/usr/bin/env python3
"""Run the perp keeper from a source checkout."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from perp_keeper.cli import run  # noqa: E402

if __name__ == "__main__":
    run()
