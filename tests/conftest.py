import pytest

import deckhand.config as config_module
import deckhand.llm as llm_module
import deckhand.tools.registry as registry_module
from deckhand.config import Config


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Fresh defaults per test, independent of local config files and env."""
    monkeypatch.delenv("DECKHAND_MODEL__PROVIDER", raising=False)
    monkeypatch.setattr(config_module, "_config", Config())
    monkeypatch.setattr(llm_module, "_provider", None)
    monkeypatch.setattr(registry_module, "_registry", None)
    yield
