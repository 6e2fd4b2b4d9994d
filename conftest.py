"""
Pytest configuration for test discovery and imports.

Puts src/ on sys.path so the sdpctl package imports without an install, and
the unit test directory so tests can share the in-memory Collective in
fakes.py.
"""

import os
import sys

ROOT_DIR = os.path.dirname(__file__)
SRC_DIR = os.path.join(ROOT_DIR, "src")
UNIT_TESTS_DIR = os.path.join(ROOT_DIR, "tests", "unit_tests")

for path in (UNIT_TESTS_DIR, SRC_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)
