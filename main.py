#!/usr/bin/env python3
"""
Appgate SDP Collective upgrade tool.

- upgrade prepare | complete | cancel | status
- force-disable-controller

This script supports running directly from a source checkout that uses a
src/ layout. For production use, prefer installing the project and using
the provided `sdpctl` console script.
"""

import os
import sys

# Add src/ to path to import the package directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from sdpctl.cli import main

if __name__ == "__main__":
    sys.exit(main())
