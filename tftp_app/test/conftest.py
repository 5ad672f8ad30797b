import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from PySide6.QtCore import QCoreApplication  # noqa: E402


@pytest.fixture(scope="session")
def qapp():
    """Uma única QCoreApplication para os testes que usam QObject/sinais."""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app
