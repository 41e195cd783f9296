import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Literal, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - python 3.10
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError, model_validator

from .errors import ErrorCode
from .types import ProviderCandidate, Tier

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT_S = 60.0
DEFAULT_TOTAL_DEADLINE_S = 90.0

ProviderType = Literal["openai", "anthropic", "ollama", "dummy"]


@dataclass
class ProviderDef:
    name: str
    type: str
    base_url: str
    model: str
    auth_env: str | None
    timeout_s: float = DEFAULT_PROVIDER_TIMEOUT_S
    models: Dict[str, str] = field(default_factory=dict)

    def is_configured(self, environ: Mapping[str, str] | None = None) -> bool:
        if not self.auth_env:
            return True
        env = os.environ if environ is None else environ
        return bool(env.get(self.auth_env, "").strip())

    @property
    def configured(self) -> bool:
        return self.is_configured()

    def model_for(self, tier: str) -> str:
        return self.models.get(tier) or self.model


@dataclass(frozen=True)
class TierEntry:
    provider: str
    model: str


@dataclass
class RouterDefaults:
    temperature: float
    markup_temperature: float
    prompt_max_chars: int


@dataclass(frozen=True)
class PlanDef:
    name: str
    limit: int
    tiers: frozenset[str]


@dataclass
class RateLimitSettings:
    window_s: float
    shards: int
    max_identities: int
    plans: Dict[str, PlanDef]

    def plan(self, name: str | None) -> PlanDef:
        if name in self.plans:
            return self.plans[name]
        return self.plans["guest"]


@dataclass
class RouterConfig:
    defaults: RouterDefaults
    total_deadline_s: float
    tiers: Dict[str, list[TierEntry]]
    baseline: TierEntry
    rate_limits: RateLimitSettings


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    router: RouterConfig
    mtimes: dict[str, float] = field(default_factory=dict)
    watch_paths: tuple[str, ...] = field(default_factory=tuple)


class _ProviderModel(BaseModel):
    type: ProviderType = "openai"
    base_url: str = ""
    model: str = ""
    auth_env: str | None = None
    timeout_s: PositiveFloat = DEFAULT_PROVIDER_TIMEOUT_S
    models: Dict[Tier, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class _TierEntryModel(BaseModel):
    provider: str
    model: str | None = None

    model_config = ConfigDict(extra="forbid")


class _DefaultsModel(BaseModel):
    temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    markup_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    prompt_max_chars: PositiveInt = 4000

    model_config = ConfigDict(extra="forbid")


class _DeadlinesModel(BaseModel):
    total_s: PositiveFloat = DEFAULT_TOTAL_DEADLINE_S

    model_config = ConfigDict(extra="forbid")


class _PlanModel(BaseModel):
    limit: int
    tiers: list[Tier] = Field(default_factory=lambda: list(Tier))

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_limit(self) -> "_PlanModel":
        if self.limit < -1:
            raise ValueError("limit must be -1 (unlimited) or >= 0")
        return self


class _RateLimitModel(BaseModel):
    window_s: PositiveFloat = 3600.0
    shards: PositiveInt = 16
    max_identities: PositiveInt = 10_000
    plans: Dict[str, _PlanModel]

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _require_guest(self) -> "_RateLimitModel":
        if "guest" not in self.plans:
            raise ValueError("plans must define 'guest'")
        return self


class _RouterModel(BaseModel):
    defaults: _DefaultsModel = Field(default_factory=_DefaultsModel)
    deadlines: _DeadlinesModel = Field(default_factory=_DeadlinesModel)
    tiers: Dict[Tier, list[_TierEntryModel]] = Field(default_factory=dict)
    baseline: _TierEntryModel
    rate_limits: _RateLimitModel

    model_config = ConfigDict(extra="forbid")


def _flatten_errors(exc: ValidationError, prefix: str = "") -> ValueError:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{prefix}{location}: {error.get('msg', 'invalid value')}")
    return ValueError("; ".join(problems))


def _provider_path(config_dir: str, use_dummy: bool) -> str:
    return os.path.join(config_dir, "providers.dummy.toml" if use_dummy else "providers.toml")


def _router_path(config_dir: str) -> str:
    return os.path.join(config_dir, "router.yaml")


def _resolve_entry(entry: _TierEntryModel, tier: str, providers: Dict[str, ProviderDef], where: str) -> TierEntry:
    provider = providers.get(entry.provider)
    if provider is None:
        available = ", ".join(sorted(providers)) or "<none>"
        raise ValueError(
            "{where} references undefined provider '{provider}'. Available providers: {available}".format(
                where=where,
                provider=entry.provider,
                available=available,
            )
        )
    model = entry.model or provider.model_for(tier)
    if not model:
        raise ValueError(f"{where} has no model for provider '{entry.provider}'")
    return TierEntry(provider=entry.provider, model=model)


def load_config(config_dir: str, use_dummy: bool = False) -> LoadedConfig:
    prov_path = _provider_path(config_dir, use_dummy)
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {}
    for name, raw in prov_data.items():
        try:
            parsed_provider = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            raise _flatten_errors(exc, prefix=f"{name} -> ") from exc
        providers[name] = ProviderDef(
            name=name,
            type=parsed_provider.type,
            base_url=parsed_provider.base_url,
            model=parsed_provider.model,
            auth_env=parsed_provider.auth_env or None,
            timeout_s=float(parsed_provider.timeout_s),
            models={tier.value: model for tier, model in parsed_provider.models.items()},
        )
    router_path = _router_path(config_dir)
    with open(router_path, "r", encoding="utf-8") as f:
        try:
            rdata = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"router.yaml is not valid YAML: {exc}") from exc
    try:
        parsed = _RouterModel.model_validate(rdata)
    except ValidationError as exc:
        raise _flatten_errors(exc) from exc

    tiers: Dict[str, list[TierEntry]] = {}
    for tier, entries in parsed.tiers.items():
        tiers[tier.value] = [
            _resolve_entry(entry, tier.value, providers, f"Tier '{tier.value}'") for entry in entries
        ]
    baseline = _resolve_entry(parsed.baseline, Tier.SMART.value, providers, "Baseline")
    limits = parsed.rate_limits
    router = RouterConfig(
        defaults=RouterDefaults(
            temperature=float(parsed.defaults.temperature),
            markup_temperature=float(parsed.defaults.markup_temperature),
            prompt_max_chars=int(parsed.defaults.prompt_max_chars),
        ),
        total_deadline_s=float(parsed.deadlines.total_s),
        tiers=tiers,
        baseline=baseline,
        rate_limits=RateLimitSettings(
            window_s=float(limits.window_s),
            shards=int(limits.shards),
            max_identities=int(limits.max_identities),
            plans={
                name: PlanDef(
                    name=name,
                    limit=int(plan.limit),
                    tiers=frozenset(tier.value for tier in plan.tiers),
                )
                for name, plan in limits.plans.items()
            },
        ),
    )
    validate_router_config(router, providers)
    mtimes = {
        "providers": os.stat(prov_path).st_mtime,
        "router": os.stat(router_path).st_mtime,
    }
    return LoadedConfig(
        providers=providers,
        router=router,
        mtimes=mtimes,
        watch_paths=(prov_path, router_path),
    )


def validate_router_config(router: RouterConfig, providers: Dict[str, ProviderDef]) -> None:
    baseline = providers.get(router.baseline.provider)
    if baseline is None:
        raise ValueError(f"Baseline references undefined provider '{router.baseline.provider}'")
    if baseline.auth_env:
        raise ValueError(
            "Baseline provider '{name}' must not require credentials (auth_env={env})".format(
                name=baseline.name,
                env=baseline.auth_env,
            )
        )


class ProviderResolver:
    """Turns a quality tier into an ordered, credential-checked candidate list."""

    def __init__(
        self,
        cfg: RouterConfig,
        providers: Dict[str, ProviderDef],
        *,
        config_dir: str | None = None,
        use_dummy: bool = False,
        mtimes: dict[str, float] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.cfg = cfg
        self.providers = providers
        self._config_dir = config_dir
        self._use_dummy = use_dummy
        self._mtimes = dict(mtimes or {})
        self._environ = environ

    def files_changed(self) -> bool:
        """True when either config file differs from the loaded one. Never mutates."""
        if self._config_dir is None:
            return False
        prov_path = _provider_path(self._config_dir, self._use_dummy)
        router_path = _router_path(self._config_dir)
        try:
            providers_mtime = os.stat(prov_path).st_mtime
            router_mtime = os.stat(router_path).st_mtime
        except FileNotFoundError:
            return False
        if (
            providers_mtime == self._mtimes.get("providers")
            and router_mtime == self._mtimes.get("router")
        ):
            return False
        return True

    def is_configured(self, provider: str) -> bool:
        defn = self.providers.get(provider)
        return defn is not None and defn.is_configured(self._environ)

    def resolve(self, tier: Tier | str) -> list[ProviderCandidate]:
        tier_name = tier.value if isinstance(tier, Tier) else str(tier)
        ordered: list[tuple[str, str]] = []
        for entry in self.cfg.tiers.get(tier_name, []):
            if not self.is_configured(entry.provider):
                logger.debug(
                    "resolver.skip tier=%s provider=%s reason=%s",
                    tier_name,
                    entry.provider,
                    ErrorCode.PROVIDER_UNAVAILABLE.value,
                )
                continue
            key = (entry.provider, entry.model)
            if key not in ordered:
                ordered.append(key)
        baseline = (self.cfg.baseline.provider, self.cfg.baseline.model)
        if baseline not in ordered:
            ordered.append(baseline)
        return [
            ProviderCandidate(provider=provider, model=model, position=index)
            for index, (provider, model) in enumerate(ordered)
        ]
