import os

# No file sink during tests.
os.environ.setdefault("LOG_DIR", "")

import pytest

from app.config import build_orchestrator_config
from fakes import FakeProvider, make_settings


@pytest.fixture
def orchestrator_config():
    return build_orchestrator_config(make_settings())


@pytest.fixture
def providers():
    return {kind: FakeProvider(kind) for kind in ("general", "lit", "preprint", "trials")}
