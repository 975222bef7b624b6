import sys
from pathlib import Path

import pytest


# Make `taleweaver` and `apps.cli` importable from a plain checkout, without an
# editable install.
_REPO_ROOT = Path(__file__).resolve().parent.parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


@pytest.fixture(autouse=True)
def _isolate_model_dir(monkeypatch):
    # A developer's TALEWEAVER_MODEL_DIR must not leak into path resolution.
    monkeypatch.delenv("TALEWEAVER_MODEL_DIR", raising=False)
