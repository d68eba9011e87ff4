#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/tunnel_manager`. This wrapper keeps the
`./tunnel-manager.py` invocation working from a fresh checkout, e.g. as the
docker-gen notify command.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from tunnel_manager.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
