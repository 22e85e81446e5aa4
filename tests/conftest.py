"""
Pytest configuration: repository root and tests dir on sys.path.
"""
from __future__ import annotations

import sys
from pathlib import Path

_TESTS_DIR = Path(__file__).parent
_ROOT = _TESTS_DIR.parent
for p in (_ROOT, _TESTS_DIR):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))
