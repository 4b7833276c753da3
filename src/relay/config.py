import os
from dataclasses import dataclass, field
from typing import Dict, Literal

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised on older interpreters
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, ValidationError, field_validator

from .errors import ConfigError

ProviderStyle = Literal["openai", "claude", "gemini"]
AuthStyle = Literal["bearer", "query_key"]
EndpointRule = Literal["chat_completions", "messages", "gemini_stream"]


@dataclass(frozen=True)
class ProviderProfile:
    """How requests for one provider style are addressed and authenticated."""

    auth: AuthStyle
    api_key_headers: tuple[str, ...] = ()
    fixed_headers: tuple[tuple[str, str], ...] = ()
    endpoint: EndpointRule = "chat_completions"
    default_base_url: str = ""


PROVIDER_PROFILES: dict[str, ProviderProfile] = {
    "openai": ProviderProfile(
        auth="bearer",
        endpoint="chat_completions",
        default_base_url="https://api.openai.com",
    ),
    "claude": ProviderProfile(
        auth="bearer",
        api_key_headers=("x-api-key",),
        fixed_headers=(("anthropic-version", "2023-06-01"),),
        endpoint="messages",
        default_base_url="https://api.anthropic.com",
    ),
    "gemini": ProviderProfile(
        auth="query_key",
        endpoint="gemini_stream",
        default_base_url="https://generativelanguage.googleapis.com",
    ),
}


@dataclass
class ProviderDef:
    name: str
    style: str
    base_url: str
    auth_env: str | None = None
    api_key: str | None = None
    model: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def profile(self) -> ProviderProfile:
        return PROVIDER_PROFILES[self.style]

    def resolve_api_key(self) -> str:
        if self.auth_env:
            value = os.environ.get(self.auth_env)
            if value:
                return value
        return self.api_key or ""


@dataclass
class UserDef:
    user_id: str
    api_key: str
    token_limit: int | None = None
    allowed_models: tuple[str, ...] | None = None


@dataclass
class AccessConfig:
    users: Dict[str, UserDef]

    def by_api_key(self, api_key: str | None) -> UserDef | None:
        if not api_key:
            return None
        return self.users.get(api_key)


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    access: AccessConfig


class _ProviderModel(BaseModel):
    style: ProviderStyle = "openai"
    base_url: str = ""
    auth_env: str | None = None
    api_key: str | None = None
    model: str = ""
    headers: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("style", mode="before")
    @classmethod
    def _normalize_style(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return "claude" if lowered == "anthropic" else lowered
        return value


class _UserModel(BaseModel):
    user_id: str = Field(min_length=1)
    api_key: str = Field(min_length=1)
    token_limit: NonNegativeInt | None = None
    allowed_models: list[str] | None = None

    model_config = ConfigDict(extra="forbid")


class _AccessModel(BaseModel):
    users: list[_UserModel] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


def _format_validation_error(exc: ValidationError, prefix: str = "") -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        if prefix:
            location = f"{prefix} -> {location}"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def load_providers(path: str) -> Dict[str, ProviderDef]:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {}
    for name, raw in data.items():
        if not isinstance(raw, dict):
            raise ConfigError(f"{name}: provider definition must be a table")
        try:
            parsed = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            raise ConfigError(_format_validation_error(exc, prefix=name)) from exc
        providers[name] = ProviderDef(
            name=name,
            style=parsed.style,
            base_url=parsed.base_url.strip(),
            auth_env=parsed.auth_env,
            api_key=parsed.api_key,
            model=parsed.model,
            headers=dict(parsed.headers),
        )
    return providers


def load_access(path: str) -> AccessConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    try:
        parsed = _AccessModel.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from exc
    users: Dict[str, UserDef] = {}
    for user in parsed.users:
        if user.api_key in users:
            raise ConfigError(f"duplicate api_key for user '{user.user_id}'")
        users[user.api_key] = UserDef(
            user_id=user.user_id,
            api_key=user.api_key,
            token_limit=user.token_limit,
            allowed_models=tuple(user.allowed_models) if user.allowed_models is not None else None,
        )
    return AccessConfig(users=users)


def load_config(config_dir: str) -> LoadedConfig:
    providers = load_providers(os.path.join(config_dir, "providers.toml"))
    access = load_access(os.path.join(config_dir, "access.yaml"))
    return LoadedConfig(providers=providers, access=access)
