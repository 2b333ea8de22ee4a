import sys
from pathlib import Path

import pytest

# Ensure project root is on path for imports when running pytest from repo root
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def store():
    from nl2soql.tests.fakes import make_store

    return make_store()


@pytest.fixture
def embedder():
    from nl2soql.tests.fakes import FakeEmbedder

    return FakeEmbedder()
