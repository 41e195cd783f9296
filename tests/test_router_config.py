import os
from pathlib import Path

import pytest

from gengate.router import ProviderDef, ProviderResolver, load_config
from gengate.types import ProviderCandidate, Tier

PROVIDERS_TOML = """
[groq]
type = "openai"
base_url = "https://api.groq.com/openai/v1"
model = "llama-70b"
auth_env = "TEST_GROQ_KEY"
timeout_s = 20
models = { fast = "llama-8b" }

[together]
type = "openai"
base_url = "https://api.together.xyz/v1"
model = "llama-405b"
auth_env = "TEST_TOGETHER_KEY"

[free]
type = "openai"
base_url = "https://text.example.org/openai"
model = "open-model"
"""

ROUTER_YAML = """
deadlines:
  total_s: 45
tiers:
  fast:
    - provider: groq
    - provider: together
  smart:
    - provider: groq
    - provider: together
      model: llama-70b-turbo
    - provider: groq
  quality:
    - provider: together
baseline:
  provider: free
rate_limits:
  window_s: 600
  plans:
    guest:
      limit: 5
      tiers: [fast]
    pro:
      limit: -1
"""


def write_config(tmp_path: Path, providers: str = PROVIDERS_TOML, router: str = ROUTER_YAML) -> str:
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "providers.toml").write_text(providers, encoding="utf-8")
    (config_dir / "router.yaml").write_text(router, encoding="utf-8")
    return str(config_dir)


def make_resolver(config_dir: str) -> ProviderResolver:
    loaded = load_config(config_dir)
    return ProviderResolver(loaded.router, loaded.providers, config_dir=config_dir, mtimes=loaded.mtimes)


def test_load_config_parses_providers_and_tiers(tmp_path: Path) -> None:
    loaded = load_config(write_config(tmp_path))

    groq = loaded.providers["groq"]
    assert groq.timeout_s == 20.0
    assert groq.models == {"fast": "llama-8b"}
    assert loaded.providers["together"].timeout_s == 60.0
    assert loaded.router.total_deadline_s == 45.0
    assert [(e.provider, e.model) for e in loaded.router.tiers["fast"]] == [
        ("groq", "llama-8b"),
        ("together", "llama-405b"),
    ]
    assert loaded.router.baseline.model == "open-model"
    assert loaded.router.rate_limits.window_s == 600.0
    assert loaded.router.rate_limits.plans["guest"].tiers == frozenset({"fast"})
    assert loaded.router.rate_limits.plans["pro"].tiers == frozenset({"fast", "smart", "quality"})
    assert set(loaded.mtimes) == {"providers", "router"}


def test_load_config_uses_dummy_registry_when_requested(tmp_path: Path) -> None:
    config_dir = write_config(tmp_path)
    dummy = PROVIDERS_TOML.replace('type = "openai"', 'type = "dummy"')
    (Path(config_dir) / "providers.dummy.toml").write_text(dummy, encoding="utf-8")

    loaded = load_config(config_dir, use_dummy=True)

    assert {p.type for p in loaded.providers.values()} == {"dummy"}
    assert loaded.watch_paths[0].endswith("providers.dummy.toml")


def test_load_config_rejects_undefined_provider(tmp_path: Path) -> None:
    router = ROUTER_YAML.replace("    - provider: together\nbaseline", "    - provider: mistral\nbaseline")

    with pytest.raises(ValueError) as excinfo:
        load_config(write_config(tmp_path, router=router))

    message = str(excinfo.value)
    assert "mistral" in message
    assert "Available providers" in message


def test_load_config_rejects_baseline_with_credentials(tmp_path: Path) -> None:
    router = ROUTER_YAML.replace("baseline:\n  provider: free", "baseline:\n  provider: groq")

    with pytest.raises(ValueError, match="must not require credentials"):
        load_config(write_config(tmp_path, router=router))


def test_load_config_flattens_validation_errors(tmp_path: Path) -> None:
    router = ROUTER_YAML + "unexpected: true\n"

    with pytest.raises(ValueError) as excinfo:
        load_config(write_config(tmp_path, router=router))

    assert "unexpected" in str(excinfo.value)


def test_load_config_requires_guest_plan(tmp_path: Path) -> None:
    router = ROUTER_YAML.replace("    guest:\n      limit: 5\n      tiers: [fast]\n", "")

    with pytest.raises(ValueError, match="guest"):
        load_config(write_config(tmp_path, router=router))


def test_provider_configured_is_checked_against_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    defn = ProviderDef(name="groq", type="openai", base_url="", model="m", auth_env="TEST_GROQ_KEY")

    monkeypatch.delenv("TEST_GROQ_KEY", raising=False)
    assert defn.configured is False
    monkeypatch.setenv("TEST_GROQ_KEY", "   ")
    assert defn.configured is False
    monkeypatch.setenv("TEST_GROQ_KEY", "secret")
    assert defn.configured is True
    assert ProviderDef(name="free", type="openai", base_url="", model="m", auth_env=None).configured


def test_resolve_skips_unconfigured_and_appends_baseline(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_GROQ_KEY", raising=False)
    monkeypatch.setenv("TEST_TOGETHER_KEY", "t")
    resolver = make_resolver(write_config(tmp_path))

    candidates = resolver.resolve(Tier.QUALITY)

    assert candidates == [
        ProviderCandidate(provider="together", model="llama-405b", position=0),
        ProviderCandidate(provider="free", model="open-model", position=1),
    ]


def test_resolve_is_never_empty(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_GROQ_KEY", raising=False)
    monkeypatch.delenv("TEST_TOGETHER_KEY", raising=False)
    resolver = make_resolver(write_config(tmp_path))

    for tier in Tier:
        candidates = resolver.resolve(tier)
        assert [(c.provider, c.position) for c in candidates] == [("free", 0)]


def test_resolve_is_deterministic_and_drops_duplicates(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_GROQ_KEY", "g")
    monkeypatch.setenv("TEST_TOGETHER_KEY", "t")
    resolver = make_resolver(write_config(tmp_path))

    first = resolver.resolve("smart")
    second = resolver.resolve(Tier.SMART)

    assert first == second
    assert [(c.provider, c.model) for c in first] == [
        ("groq", "llama-70b"),
        ("together", "llama-70b-turbo"),
        ("free", "open-model"),
    ]
    assert [c.position for c in first] == [0, 1, 2]


def test_resolve_rechecks_credentials_on_every_call(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_GROQ_KEY", raising=False)
    monkeypatch.delenv("TEST_TOGETHER_KEY", raising=False)
    resolver = make_resolver(write_config(tmp_path))
    assert [c.provider for c in resolver.resolve(Tier.FAST)] == ["free"]

    monkeypatch.setenv("TEST_GROQ_KEY", "now-present")

    assert [c.provider for c in resolver.resolve(Tier.FAST)] == ["groq", "free"]


def test_resolve_accepts_injected_environment(tmp_path: Path) -> None:
    config_dir = write_config(tmp_path)
    loaded = load_config(config_dir)
    resolver = ProviderResolver(loaded.router, loaded.providers, environ={"TEST_TOGETHER_KEY": "x"})

    assert [c.provider for c in resolver.resolve(Tier.FAST)] == ["together", "free"]


def test_load_config_rejects_unknown_provider_type(tmp_path: Path) -> None:
    providers = PROVIDERS_TOML.replace('type = "openai"', 'type = "bogus"', 1)

    with pytest.raises(ValueError) as excinfo:
        load_config(write_config(tmp_path, providers=providers))

    assert "groq -> type" in str(excinfo.value)


def test_files_changed_detects_edits_without_reloading(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_GROQ_KEY", "g")
    config_dir = write_config(tmp_path)
    resolver = make_resolver(config_dir)
    cfg = resolver.cfg
    providers = resolver.providers
    assert resolver.files_changed() is False

    router_path = Path(config_dir) / "router.yaml"
    router_path.write_text(ROUTER_YAML.replace("total_s: 45", "total_s: 12"), encoding="utf-8")
    stat = router_path.stat()
    os.utime(router_path, (stat.st_atime + 10, stat.st_mtime + 10))

    assert resolver.files_changed() is True
    assert resolver.files_changed() is True
    assert resolver.cfg is cfg
    assert resolver.providers is providers
    assert resolver.cfg.total_deadline_s == 45.0

    assert make_resolver(config_dir).files_changed() is False
