"""Test configuration for ensuring the flat modules import."""

import os
import sys

# Put the repository root (the directory containing this file) on ``sys.path``
# so ``import main`` works regardless of how pytest was invoked.
ROOT_DIR = os.path.abspath(os.path.dirname(__file__))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)
