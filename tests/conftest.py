"""
Test configuration for the labbilling project.

Ensures the project root is on sys.path so tests can import `labbilling.*`
modules, and provides an in-memory backend.
"""
import os
import sys

import pytest


PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tests.fake_backend import FakeBackend  # noqa: E402


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
