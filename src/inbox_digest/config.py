"""
Configuration management using pydantic-settings.

Precedence (lowest first): model defaults, ``configs/config.example.yaml``,
``configs/config.yaml``, the file named by ``INBOX_DIGEST_CONFIG_PATH``.
``LLM_ENDPOINT`` in the environment always wins over YAML.
"""
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Any, List, Dict, Optional
import os
import yaml
from pathlib import Path
import structlog

logger = structlog.get_logger()

CONFIG_PATH_ENV = "INBOX_DIGEST_CONFIG_PATH"


def normalize_accounts(accounts: List[str]) -> List[str]:
    return [a.strip().lower() for a in accounts if a and a.strip()]


class PollConfig(BaseModel):
    """Polling cadence in minutes."""
    active_minutes: float = Field(default=5, gt=0, description="Interval inside the active window")
    inactive_minutes: float = Field(default=30, gt=0, description="Interval outside the active window")


class ActiveWindowConfig(BaseModel):
    """Hours of the day (half-open, local to timezone) that use the fast cadence."""
    start: int = Field(default=9, ge=0, le=24, description="First active hour (inclusive)")
    end: int = Field(default=18, ge=0, le=24, description="First inactive hour (exclusive)")
    timezone: str = Field(default="UTC", description="IANA timezone for the window")


class SyncConfig(BaseModel):
    """Source gateway (gog CLI) settings."""
    gog_binary: str = Field(default="gog", description="Path or name of the gog executable")
    timeout_s: float = Field(default=30, gt=0, description="Timeout per gateway command")
    rescan_days: int = Field(default=7, gt=0, description="Lookback for the full rescan fallback")
    max_workers: int = Field(default=4, gt=0, description="Accounts fetched in parallel")
    body_max_chars: int = Field(default=3000, gt=0, description="Cleaned body length cap")


class LLMConfig(BaseModel):
    """LLM Gateway configuration."""
    endpoint: str = Field(default="", description="Chat completions endpoint")
    model: str = Field(default="gpt-4o-mini", description="Model identifier")
    timeout_s: float = Field(default=60, gt=0, description="Request timeout in seconds")
    max_tokens: int = Field(default=2000, description="Response token cap")
    headers: Dict[str, str] = Field(default_factory=dict, description="Additional headers")
    token_env: str = Field(default="LLM_TOKEN", description="Environment variable holding the bearer token")
    batch_size: int = Field(default=10, gt=0, description="Messages per classification request")

    def __init__(self, **kwargs):
        env_endpoint = os.getenv('LLM_ENDPOINT', '')
        if 'endpoint' not in kwargs and env_endpoint:
            kwargs['endpoint'] = env_endpoint
        super().__init__(**kwargs)

    def get_token(self) -> Optional[str]:
        """Bearer token from the environment, or None for unauthenticated gateways."""
        return os.getenv(self.token_env) or None


class AlertsConfig(BaseModel):
    consecutive_failures_before_alert: int = Field(default=3, gt=0,
                                                   description="Sync failures before alerting")


class NotifyConfig(BaseModel):
    """Outbound push delivery."""
    enabled: bool = Field(default=True)
    command: List[str] = Field(default_factory=lambda: ["openclaw", "agent", "--deliver"],
                               description="Delivery command; target and message are appended")
    target: str = Field(default="main", description="Session that receives pushes")
    timeout_s: float = Field(default=30, gt=0)


class StateConfig(BaseModel):
    state_dir: str = Field(default=".state", description="Directory for digest.json, state.json, emails.jsonl")
    ledger_max_entries: int = Field(default=10_000, gt=0, description="Ledger rotation threshold")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""
    prometheus_port: int = Field(default=9108, description="Prometheus metrics port")
    health_port: int = Field(default=9109, description="Health check port")
    enable_http: bool = Field(default=False, description="Expose metrics and health endpoints")
    log_level: str = Field(default="INFO", description="Log level")


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="INBOX_DIGEST_",
        case_sensitive=False,
        extra="ignore",
    )

    accounts: List[str] = Field(default_factory=list, description="Owner Gmail accounts to poll")
    poll: PollConfig = Field(default_factory=PollConfig)
    active_window: ActiveWindowConfig = Field(default_factory=ActiveWindowConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @field_validator("accounts")
    @classmethod
    def _normalize_accounts(cls, value: List[str]) -> List[str]:
        return normalize_accounts(value)

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        for yaml_config in self._load_yaml_configs():
            self._apply_yaml_config(yaml_config)

    def _load_yaml_configs(self) -> List[Dict]:
        """Load YAML configuration files in order of precedence."""
        paths = [Path("configs/config.example.yaml"), Path("configs/config.yaml")]
        custom_path = os.getenv(CONFIG_PATH_ENV)
        if custom_path:
            paths.append(Path(custom_path))

        configs = []
        for path in paths:
            if not path.exists():
                continue
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    config = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load config file", path=str(path), error=str(e))
                continue
            if isinstance(config, dict):
                configs.append(config)
        return configs

    def _apply_yaml_config(self, yaml_config: Dict[str, Any]) -> None:
        """Merge one YAML document into the current configuration."""
        if 'accounts' in yaml_config:
            self.accounts = normalize_accounts(list(yaml_config['accounts'] or []))

        for section in ('poll', 'active_window', 'sync', 'llm', 'alerts', 'notify', 'state', 'observability'):
            values = yaml_config.get(section)
            if not isinstance(values, dict):
                continue
            current = getattr(self, section)
            merged = {**current.model_dump(), **values}
            if section == 'llm' and os.getenv('LLM_ENDPOINT'):
                merged['endpoint'] = os.getenv('LLM_ENDPOINT')
            setattr(self, section, type(current)(**merged))
