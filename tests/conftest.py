"""Shared test setup: ``src/`` on sys.path and a fresh-server fixture."""

from __future__ import annotations

import importlib
import sys
from pathlib import Path
from types import ModuleType
from typing import Callable

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
SRC_STR = str(SRC_DIR)
if SRC_STR not in sys.path:
    sys.path.insert(0, SRC_STR)


SERVER_PROVIDERS_TOML = """
[groq]
type = "dummy"
model = "dummy-groq"
auth_env = "TEST_GATE_GROQ_KEY"

[together]
type = "dummy"
model = "dummy-together"

[free]
type = "dummy"
model = "dummy-free"
"""

SERVER_ROUTER_YAML = """
tiers:
  fast:
    - provider: groq
    - provider: together
  smart:
    - provider: groq
    - provider: together
  quality:
    - provider: together
baseline:
  provider: free
rate_limits:
  window_s: 3600
  plans:
    guest:
      limit: 3
      tiers: [fast, smart]
    free:
      limit: 5
      tiers: [fast, smart]
    pro:
      limit: -1
"""


@pytest.fixture
def load_server(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[..., ModuleType]:
    """Import a fresh ``gengate.server`` bound to a throwaway config and records dir."""

    def _load(
        *,
        providers: str = SERVER_PROVIDERS_TOML,
        router: str = SERVER_ROUTER_YAML,
        api_keys: str = "",
    ) -> ModuleType:
        config_dir = tmp_path / "config"
        config_dir.mkdir(exist_ok=True)
        (config_dir / "providers.dummy.toml").write_text(providers, encoding="utf-8")
        (config_dir / "router.yaml").write_text(router, encoding="utf-8")
        monkeypatch.setenv("GENGATE_CONFIG_DIR", str(config_dir))
        monkeypatch.setenv("GENGATE_RECORDS_DIR", str(tmp_path / "records"))
        monkeypatch.setenv("GENGATE_USE_DUMMY", "1")
        monkeypatch.setenv("GENGATE_INBOUND_API_KEYS", api_keys)
        monkeypatch.delenv("TEST_GATE_GROQ_KEY", raising=False)
        monkeypatch.delitem(sys.modules, "gengate.server", raising=False)
        return importlib.import_module("gengate.server")

    return _load
