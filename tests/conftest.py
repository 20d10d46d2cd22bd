"""
Pytest config.

Local imports like `import rbac_cascade` rely on the repo root being on sys.path when the
package is not installed. Pin that here so a global `pytest` entrypoint can always import it.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    """`load_config` is lru_cached; tests that monkeypatch env need a clean read."""
    from rbac_cascade.config import load_config

    load_config.cache_clear()
    yield
    load_config.cache_clear()
