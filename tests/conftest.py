"""
pytest configuration for cname-finalizer tests

This file ensures tests can find the cname_finalizer module regardless of environment
"""

import sys
from pathlib import Path

# Add parent directory to path so tests can import cname_finalizer
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))
