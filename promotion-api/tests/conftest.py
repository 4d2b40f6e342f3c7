import sys
from pathlib import Path


# Ensure promotion-api and helm-adapter are on sys.path for tests that import modules directly.
PROMOTION_API_DIR = Path(__file__).resolve().parents[1]
HELM_ADAPTER_DIR = PROMOTION_API_DIR.parent / "helm-adapter"
for path in (PROMOTION_API_DIR, HELM_ADAPTER_DIR):
    if path.is_dir() and str(path) not in sys.path:
        sys.path.insert(0, str(path))


import pytest


@pytest.fixture
def anyio_backend():
    return "asyncio"
