"""
Test configuration for the PDF viewer API.

services/api/ is put on sys.path so tests import modules the same way the
application does ('from core.viewer import ...', 'import main').
"""
import sys
from pathlib import Path

import pytest

_api_dir = Path(__file__).parent.parent        # .../services/api/
_tests_dir = Path(__file__).parent

for _path in (_api_dir, _tests_dir):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))


@pytest.fixture
def sample_pdf_bytes():
    from fakes import make_pdf_bytes
    return make_pdf_bytes(page_count=3)
