"""
Configuration management (SSOT).

This module defines ALL configuration for the ledger import pipeline.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- A provider is only eligible for routing when it has credentials
  (API key for hosted vendors, explicit enable flag for Ollama)
- Provider order is fixed at load time and never reordered at runtime
- Secrets come from the environment first, the YAML file second
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

KNOWN_PROVIDERS = ("gemini", "openai", "ollama")


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class GeminiConfig:
    """Google Gemini configuration."""

    api_key: str = ""
    model: str = "gemini-2.0-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    # Request timeout (seconds)
    timeout_seconds: int = 60

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


@dataclass
class OpenAIConfig:
    """OpenAI configuration."""

    api_key: str = ""
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: int = 60

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


@dataclass
class OllamaConfig:
    """Local LLM (Ollama) configuration.

    - enabled: Master switch (default OFF), Ollama has no API key
    - url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    """

    enabled: bool = False
    url: str = "http://localhost:11434"
    # Format: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None
    model: str = "qwen2.5vl:7b"
    timeout_seconds: int = 120
    # Maximum concurrent requests against one Ollama server
    max_concurrent: int = 2

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.url)

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class ProvidersConfig:
    """LLM provider chain.

    The order list is the fallback order. Providers without credentials are
    skipped when the registry is built.
    """

    order: list[str] = field(default_factory=lambda: list(KNOWN_PROVIDERS))
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)


@dataclass
class BlobConfig:
    """Blob/file store fetch settings."""

    timeout_seconds: int = 30
    # Transport-level retries (429/5xx) inside a single fetch
    max_retries: int = 3
    backoff_factor: float = 0.5


@dataclass
class BatchConfig:
    """Batch orchestration settings."""

    # Bounded worker pool for per-item jobs
    max_workers: int = 4
    # Job-level retries for transient failures (provider outage, fetch errors)
    max_retries: int = 3
    # Exponential backoff: base * 2**retry_count, capped at max
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    # How often run_batch re-checks for items waiting on backoff
    poll_interval_seconds: float = 0.5
    # A processing item older than this is treated as abandoned and reclaimed
    stale_after_seconds: float = 600.0


@dataclass
class CategorizationConfig:
    """Categorization settings."""

    # Use the AI tier when no rule matches
    include_ai: bool = True
    # Below this confidence a result is flagged for review
    min_confidence: float = 0.7


@dataclass
class DefaultsConfig:
    """Fallback user preferences when none are stored."""

    currency: str = "USD"
    country: str | None = None
    province: str | None = None
    usage_type: str = "personal"


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    blob: BlobConfig = field(default_factory=BlobConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    categorization: CategorizationConfig = field(default_factory=CategorizationConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        for name in self.providers.order:
            if name not in KNOWN_PROVIDERS:
                errors.append(f"providers.order contains unknown provider '{name}'")
        if len(set(self.providers.order)) != len(self.providers.order):
            errors.append("providers.order must not contain duplicates")

        if self.providers.ollama.enabled and not self.providers.ollama.url:
            errors.append("providers.ollama.url is required when Ollama is enabled")

        if self.batch.max_workers < 1:
            errors.append("batch.max_workers must be >= 1")
        if self.batch.max_retries < 0:
            errors.append("batch.max_retries must be >= 0")
        if self.batch.backoff_max_seconds < self.batch.backoff_base_seconds:
            errors.append("batch.backoff_max_seconds must be >= backoff_base_seconds")
        if self.batch.stale_after_seconds <= 0:
            errors.append("batch.stale_after_seconds must be > 0")

        if not 0.0 <= self.categorization.min_confidence <= 1.0:
            errors.append("categorization.min_confidence must be between 0 and 1")

        if self.defaults.usage_type not in ("personal", "business", "both"):
            errors.append("defaults.usage_type must be personal, business or both")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - GOOGLE_AI_API_KEY
    - OPENAI_API_KEY
    - OLLAMA_URL
    - OLLAMA_AUTH_HEADER
    - OLLAMA_MODEL
    - LEDGER_IMPORT_OLLAMA_ENABLED (true/false)
    - LEDGER_IMPORT_PROVIDER_ORDER (comma-separated, e.g. "openai,gemini")
    - LEDGER_IMPORT_DB (state database path)
    - LEDGER_IMPORT_MAX_WORKERS

    Raises:
        ConfigValidationError: If the merged configuration is invalid
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Providers
    providers_data = data.get("providers", {})
    order_env = os.environ.get("LEDGER_IMPORT_PROVIDER_ORDER", "")
    if order_env:
        order = [p.strip().lower() for p in order_env.split(",") if p.strip()]
    else:
        order = list(providers_data.get("order", KNOWN_PROVIDERS))

    gemini_data = providers_data.get("gemini", {})
    gemini = GeminiConfig(
        api_key=os.environ.get("GOOGLE_AI_API_KEY", gemini_data.get("api_key", "")),
        model=gemini_data.get("model", "gemini-2.0-flash"),
        base_url=gemini_data.get(
            "base_url", "https://generativelanguage.googleapis.com/v1beta"
        ),
        timeout_seconds=int(gemini_data.get("timeout_seconds", 60)),
    )

    openai_data = providers_data.get("openai", {})
    openai = OpenAIConfig(
        api_key=os.environ.get("OPENAI_API_KEY", openai_data.get("api_key", "")),
        model=openai_data.get("model", "gpt-4o-mini"),
        base_url=openai_data.get("base_url", "https://api.openai.com/v1"),
        timeout_seconds=int(openai_data.get("timeout_seconds", 60)),
    )

    ollama_data = providers_data.get("ollama", {})
    ollama = OllamaConfig(
        enabled=_env_bool("LEDGER_IMPORT_OLLAMA_ENABLED", ollama_data.get("enabled", False)),
        url=os.environ.get("OLLAMA_URL", ollama_data.get("url", "http://localhost:11434")),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", ollama_data.get("auth_header")),
        model=os.environ.get("OLLAMA_MODEL", ollama_data.get("model", "qwen2.5vl:7b")),
        timeout_seconds=int(ollama_data.get("timeout_seconds", 120)),
        max_concurrent=int(ollama_data.get("max_concurrent", 2)),
    )

    providers = ProvidersConfig(order=order, gemini=gemini, openai=openai, ollama=ollama)

    # Blob store
    blob_data = data.get("blob", {})
    blob = BlobConfig(
        timeout_seconds=blob_data.get("timeout_seconds", 30),
        max_retries=blob_data.get("max_retries", 3),
        backoff_factor=blob_data.get("backoff_factor", 0.5),
    )

    # Batch
    batch_data = data.get("batch", {})
    max_workers = batch_data.get("max_workers", 4)
    workers_env = os.environ.get("LEDGER_IMPORT_MAX_WORKERS", "")
    if workers_env:
        try:
            max_workers = int(workers_env)
        except ValueError:
            pass  # Keep configured value

    batch = BatchConfig(
        max_workers=max_workers,
        max_retries=batch_data.get("max_retries", 3),
        backoff_base_seconds=batch_data.get("backoff_base_seconds", 2.0),
        backoff_max_seconds=batch_data.get("backoff_max_seconds", 60.0),
        poll_interval_seconds=batch_data.get("poll_interval_seconds", 0.5),
        stale_after_seconds=batch_data.get("stale_after_seconds", 600.0),
    )

    # Categorization
    cat_data = data.get("categorization", {})
    categorization = CategorizationConfig(
        include_ai=cat_data.get("include_ai", True),
        min_confidence=cat_data.get("min_confidence", 0.7),
    )

    # Defaults
    defaults_data = data.get("defaults", {})
    defaults = DefaultsConfig(
        currency=defaults_data.get("currency", "USD"),
        country=defaults_data.get("country"),
        province=defaults_data.get("province"),
        usage_type=defaults_data.get("usage_type", "personal"),
    )

    state_db = os.environ.get("LEDGER_IMPORT_DB", data.get("state_db_path", "data/state.db"))

    config = Config(
        providers=providers,
        blob=blob,
        batch=batch,
        categorization=categorization,
        defaults=defaults,
        state_db_path=Path(state_db),
    )

    errors = config.validate()
    if errors:
        raise ConfigValidationError("Invalid configuration: " + "; ".join(errors))
    return config


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Ledger Import Pipeline Configuration
#
# Secrets should come from the environment:
#   GOOGLE_AI_API_KEY, OPENAI_API_KEY, OLLAMA_URL, OLLAMA_AUTH_HEADER

# LLM providers, tried in this order. A provider without credentials is skipped.
providers:
  order: ["gemini", "openai", "ollama"]
  gemini:
    api_key: ""                            # Prefer GOOGLE_AI_API_KEY
    model: "gemini-2.0-flash"
    timeout_seconds: 60
  openai:
    api_key: ""                            # Prefer OPENAI_API_KEY
    model: "gpt-4o-mini"
    timeout_seconds: 60
  ollama:
    enabled: false                         # Set to true to use a local/LAN Ollama
    url: "http://localhost:11434"
    auth_header: null                      # Optional auth header for proxied deployments
    model: "qwen2.5vl:7b"                  # Must be a vision model for receipts
    timeout_seconds: 120
    max_concurrent: 2                      # Max concurrent requests to one server

# Blob store fetches (uploaded files)
blob:
  timeout_seconds: 30
  max_retries: 3                           # Transport retries on 429/5xx
  backoff_factor: 0.5

# Batch orchestration
batch:
  max_workers: 4                           # Concurrent items per batch
  max_retries: 3                           # Job retries for transient failures
  backoff_base_seconds: 2.0                # Delay = base * 2^retry, capped
  backoff_max_seconds: 60.0
  poll_interval_seconds: 0.5
  stale_after_seconds: 600                 # Reclaim items stuck in processing

# Categorization
categorization:
  include_ai: true                         # Fall back to AI when no rule matches
  min_confidence: 0.7                      # Below this: flagged for review

# Defaults when a user has no stored settings
defaults:
  currency: "USD"
  country: null                            # "CA" or "US" enables tax fields
  province: null
  usage_type: "personal"                   # personal, business or both

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
