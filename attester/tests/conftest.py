"""
Shared pytest setup for the attester test suite.

Rate limiting is switched off before ``api.main`` is imported anywhere, so
HTTP tests can hammer /attest without tripping the slowapi limiter.
"""

import os
import sys

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))
