"""
Configuration management for the vision gateway.

YAML file with ${ENV_VAR} substitution; values may also come from a .env
file found next to the config file or in one of its parent directories.
Every section is optional and the gateway runs on defaults without a file.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from .models import PricingRule


class ConfigError(Exception):
    """Configuration related errors"""
    pass


@dataclass
class ProviderConfig:
    """Per-vendor settings"""
    api_key: str | None = None
    admin_key: str | None = None  # organization-level key for cost reports
    model: str | None = None
    base_url: str | None = None
    max_tokens: int = 1500
    temperature: float = 0.7


@dataclass
class GatewayConfig:
    """Gateway behaviour"""
    default_provider: str = "openai"
    min_request_interval: float = 5.0
    default_category: str = "market-analysis"
    ledger_capacity: int = 1000


@dataclass
class ProxyConfig:
    """Outbound HTTP proxy"""
    enable: bool = False
    host: str | None = None
    port: int | None = None


@dataclass
class HttpClientConfig:
    """httpx connection pool and timeout"""
    max_connections: int = 100
    max_keepalive_connections: int = 20
    timeout: float = 60.0


@dataclass
class Config:
    """Complete gateway configuration"""
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    pricing: dict[str, dict[str, PricingRule]] = field(default_factory=dict)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    http_client: HttpClientConfig = field(default_factory=HttpClientConfig)


def find_dotenv(start: Path) -> Path | None:
    """Nearest .env in ``start`` or any of its parents."""
    directory = start if start.is_dir() else start.parent
    for candidate_dir in [directory, *directory.resolve().parents]:
        candidate = candidate_dir / ".env"
        if candidate.is_file():
            return candidate
    return None


def read_dotenv(path: Path) -> dict[str, str]:
    """
    Parse KEY=VALUE lines. Comments and blank lines are ignored, surrounding
    quotes are removed.
    """
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, _, value = line.partition("=")
        name = name.strip()
        if name:
            values[name] = value.strip().strip('"').strip("'")
    return values


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ConfigManager:
    """
    Configuration manager for the vision gateway.

    Supports:
    - Loading configuration from YAML files
    - Environment variable substitution (${VAR_NAME} syntax)
    - A .env file next to (or above) the config file; real environment
      variables win over .env values
    - Running on defaults when no config file exists
    """

    ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')
    DEFAULT_PATH = Path("config.yaml")

    def __init__(self, config_path: str | Path | None = None):
        """
        Args:
            config_path: YAML file. If None, config.yaml is used when present
                         and built-in defaults otherwise.
        """
        self._config: Config | None = None
        self._explicit = config_path is not None
        self._config_path = Path(config_path) if config_path else self.DEFAULT_PATH

    @property
    def config(self) -> Config:
        """The loaded configuration, loaded on first access."""
        if self._config is None:
            self._config = self.load()
        return self._config

    def load(self, config_path: str | Path | None = None) -> Config:
        """
        Load configuration from a YAML file.

        Raises:
            ConfigError: If an explicitly named file is missing, or the file
                         is not valid YAML or not a valid configuration
        """
        path = Path(config_path) if config_path else self._config_path
        self._apply_dotenv(path)

        if not path.exists():
            if config_path or self._explicit:
                raise ConfigError(f"Configuration file not found: {path}")
            return Config()

        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML format: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}")

        if raw is None:
            return Config()
        if not isinstance(raw, dict):
            raise ConfigError("Configuration must be a YAML mapping")
        return self.parse(raw)

    def parse(self, raw: dict) -> Config:
        """Build a Config from an already-loaded mapping, substituting env vars first."""
        raw = self._substitute_env_vars(raw)
        config = Config(
            gateway=self._parse_gateway(self._section(raw, "gateway")),
            providers=self._parse_providers(self._section(raw, "providers")),
            pricing=self._parse_pricing(self._section(raw, "pricing")),
            proxy=self._parse_proxy(self._section(raw, "proxy")),
            http_client=self._parse_http_client(self._section(raw, "http_client")),
        )
        if config.gateway.min_request_interval < 0:
            raise ConfigError("'gateway.min_request_interval' cannot be negative")
        if config.gateway.ledger_capacity <= 0:
            raise ConfigError("'gateway.ledger_capacity' must be positive")
        return config

    def _apply_dotenv(self, config_path: Path) -> None:
        dotenv = find_dotenv(config_path)
        if dotenv is None:
            return
        try:
            values = read_dotenv(dotenv)
        except OSError:
            return
        for name, value in values.items():
            if not os.environ.get(name):
                os.environ[name] = value

    def _substitute_env_vars(self, obj: Any) -> Any:
        """
        Replace ${VAR_NAME} recursively. A string made only of unset
        variables becomes None, so a provider without a key is simply
        unconfigured.
        """
        if isinstance(obj, dict):
            return {key: self._substitute_env_vars(value) for key, value in obj.items()}
        if isinstance(obj, list):
            return [self._substitute_env_vars(item) for item in obj]
        if not isinstance(obj, str) or not self.ENV_VAR_PATTERN.search(obj):
            return obj
        result = self.ENV_VAR_PATTERN.sub(lambda match: os.environ.get(match.group(1), ""), obj)
        return result or None

    # ------------------------------------------------------------------
    # sections

    @staticmethod
    def _section(raw: dict, name: str) -> dict:
        section = raw.get(name)
        if section is None:
            return {}
        if not isinstance(section, dict):
            raise ConfigError(f"'{name}' section must be a mapping")
        return section

    @staticmethod
    def _value(section: dict, where: str, key: str, cast: Callable[[Any], Any], default: Any) -> Any:
        value = section.get(key)
        if value is None:
            return default
        try:
            return cast(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid configuration value for '{where}.{key}': {value!r}")

    def _parse_gateway(self, section: dict) -> GatewayConfig:
        defaults = GatewayConfig()
        return GatewayConfig(
            default_provider=self._value(section, "gateway", "default_provider", str, defaults.default_provider),
            min_request_interval=self._value(
                section, "gateway", "min_request_interval", float, defaults.min_request_interval,
            ),
            default_category=self._value(section, "gateway", "default_category", str, defaults.default_category),
            ledger_capacity=self._value(section, "gateway", "ledger_capacity", int, defaults.ledger_capacity),
        )

    def _parse_providers(self, section: dict) -> dict[str, ProviderConfig]:
        providers = {}
        for name, data in section.items():
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise ConfigError(f"Provider '{name}' configuration must be a mapping")
            where = f"providers.{name}"
            providers[name] = ProviderConfig(
                api_key=_optional_str(data.get("api_key")),
                admin_key=_optional_str(data.get("admin_key")),
                model=_optional_str(data.get("model")),
                base_url=_optional_str(data.get("base_url")),
                max_tokens=self._value(data, where, "max_tokens", int, 1500),
                temperature=self._value(data, where, "temperature", float, 0.7),
            )
        return providers

    def _parse_pricing(self, section: dict) -> dict[str, dict[str, PricingRule]]:
        pricing: dict[str, dict[str, PricingRule]] = {}
        for provider, models in section.items():
            if not isinstance(models, dict):
                raise ConfigError(f"Pricing for '{provider}' must be a mapping")
            pricing[provider] = {}
            for model, prices in models.items():
                if not isinstance(prices, dict):
                    raise ConfigError(f"Pricing for '{provider}/{model}' must be a mapping")
                where = f"pricing.{provider}.{model}"
                rule = PricingRule(
                    provider=provider,
                    model=str(model),
                    input_cost_per_1m=self._value(prices, where, "input_cost_per_1m", float, 0.0),
                    output_cost_per_1m=self._value(prices, where, "output_cost_per_1m", float, 0.0),
                )
                if rule.input_cost_per_1m < 0 or rule.output_cost_per_1m < 0:
                    raise ConfigError(f"Prices for '{provider}/{model}' cannot be negative")
                pricing[provider][str(model)] = rule
        return pricing

    def _parse_proxy(self, section: dict) -> ProxyConfig:
        return ProxyConfig(
            enable=bool(section.get("enable", False)),
            host=_optional_str(section.get("host")),
            port=self._value(section, "proxy", "port", int, None),
        )

    def _parse_http_client(self, section: dict) -> HttpClientConfig:
        defaults = HttpClientConfig()
        return HttpClientConfig(
            max_connections=self._value(section, "http_client", "max_connections", int, defaults.max_connections),
            max_keepalive_connections=self._value(
                section, "http_client", "max_keepalive_connections", int, defaults.max_keepalive_connections,
            ),
            timeout=self._value(section, "http_client", "timeout", float, defaults.timeout),
        )

    # ------------------------------------------------------------------
    # accessors

    def get_provider_config(self, provider: str) -> ProviderConfig:
        """Settings for one provider; unconfigured providers get defaults."""
        return self.config.providers.get(provider) or ProviderConfig()

    def get_proxy_url(self) -> str | None:
        """Proxy URL when the proxy is enabled, otherwise None."""
        proxy = self.config.proxy
        if not proxy.enable or not proxy.host:
            return None
        base = proxy.host.rstrip("/")
        return f"{base}:{proxy.port}" if proxy.port else base

    def get_configured_providers(self) -> list[str]:
        """Providers that have an API key in the configuration."""
        return [name for name, provider in self.config.providers.items() if provider.api_key]
