#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/k8s_endpoint_updater`. This wrapper allows
running `./k8s-endpoint-updater.py` straight from a fresh checkout.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from k8s_endpoint_updater.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
