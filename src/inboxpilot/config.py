"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class StorageConfig:
    sqlite_path: str = "inboxpilot.db"


@dataclass
class AIConfig:
    provider: str = "ollama"
    model: str = "mistral-nemo"
    embedding_model: str = "nomic-embed-text"
    ollama_base_url: str = "http://localhost:11434"
    ollama_api_key: str = ""

    @property
    def model_spec(self) -> str:
        return f"{self.provider}:{self.model}"

    def to_provider_dict(self) -> dict:
        """Return a dict suitable for passing to get_provider()."""
        return {
            "ollama_base_url": self.ollama_base_url,
            "ollama_api_key": self.ollama_api_key,
            "embedding_model": self.embedding_model,
        }


@dataclass
class MailConfig:
    base_url: str = "https://api.aurinko.io/v1"
    timeout_seconds: float = 30.0
    request_delay_seconds: float = 0.5
    scan_page_size: int = 50
    import_page_size: int = 100
    fetch_retry_delays: list[float] = field(default_factory=lambda: [1.0, 3.0, 10.0])


@dataclass
class ScraperConfig:
    base_url: str = "https://api.firecrawl.dev/v1"
    api_key: str = ""
    timeout_seconds: float = 60.0
    page_delay_seconds: float = 0.5
    max_pages_per_site: int = 5
    map_limit: int = 20


@dataclass
class PipelineConfig:
    stale_minutes: int = 5
    max_retries: int = 3
    max_runtime_seconds: float = 25.0
    fetch_batch_size: int = 30
    classify_batch_size: int = 50
    llm_batch_size: int = 25
    import_default_cap: int = 2500
    import_max_cap: int = 10000
    import_max_attempts: int = 6
    incident_dedupe_minutes: int = 10
    worker_threads: int = 4


@dataclass
class TriageConfig:
    rule_min_confidence: int = 70
    bootstrap_min_email_count: int = 5
    auto_create_confidence: int = 85
    max_suggestions: int = 20
    few_shot_corrections: int = 10


@dataclass
class VoiceConfig:
    min_pairs: int = 5
    max_pairs: int = 100
    refresh_hours: int = 24
    drift_threshold: float = 0.3
    drift_sample_size: int = 20
    drift_min_emails: int = 5


@dataclass
class DraftConfig:
    faq_context: int = 5
    verify_faq_context: int = 10
    # Edits at least this similar to the draft are not worth learning from
    learn_similarity: float = 0.8
    edit_examples: int = 3


@dataclass
class CompetitorConfig:
    discover_target_count: int = 50
    scrape_batch_size: int = 3
    extract_batch_size: int = 5
    embed_batch_size: int = 50
    refine_batch_size: int = 10
    similarity_threshold: float = 0.92
    blocked_domains: list[str] = field(default_factory=lambda: [
        "yell.com", "checkatrade.com", "trustatrader.com", "mybuilder.com",
        "bark.com", "facebook.com", "instagram.com", "twitter.com", "x.com",
        "linkedin.com", "youtube.com", "tiktok.com", "pinterest.com",
        "yelp.com", "tripadvisor.com", "google.com", "bing.com", "yahoo.com",
        "wikipedia.org", "amazon.com", "amazon.co.uk", "ebay.com",
        "gumtree.com", "trustpilot.com", "indeed.com", "glassdoor.com",
        "nextdoor.com", "reed.co.uk", "gov.uk",
    ])


@dataclass
class ApiConfig:
    auth_required: bool = True
    # token -> workspace_id; the service token may act on any workspace
    tokens: dict[str, str] = field(default_factory=dict)
    service_token: str = ""


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json_format: bool = True
    service_name: str = "inboxpilot"


@dataclass
class Config:
    storage: StorageConfig = field(default_factory=StorageConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    scraper: ScraperConfig = field(default_factory=ScraperConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    triage: TriageConfig = field(default_factory=TriageConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    drafts: DraftConfig = field(default_factory=DraftConfig)
    competitors: CompetitorConfig = field(default_factory=CompetitorConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _dict_to_config(data: dict) -> Config:
    """Convert a raw dict to a Config dataclass, handling nested structures."""
    from dacite import Config as DaciteConfig
    from dacite import from_dict

    return from_dict(data_class=Config, data=data, config=DaciteConfig(cast=[float]))


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    env_path = os.environ.get("INBOXPILOT_CONFIG")
    if env_path:
        p = Path(env_path)
        if p.exists():
            return p

    local = Path("config.yaml")
    if local.exists():
        return local

    xdg = Path.home() / ".config" / "inboxpilot" / "config.yaml"
    if xdg.exists():
        return xdg

    return None


def _load_dotenv() -> None:
    """Load .env file from current directory if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        # Don't overwrite already-set env vars
        if key not in os.environ:
            os.environ[key] = value


def _apply_env_overrides(config: Config) -> Config:
    """Override config values from environment variables.

    Supports:
        ollama_host          -> config.ai.ollama_base_url
        ollama_api_key       -> config.ai.ollama_api_key
        model_name           -> config.ai.model
        INBOXPILOT_DB        -> config.storage.sqlite_path
        INBOXPILOT_API_TOKEN -> config.api.service_token
        SCRAPER_API_KEY      -> config.scraper.api_key
        LOG_LEVEL            -> config.logging.level
    """
    if os.environ.get("ollama_host"):
        config.ai.ollama_base_url = os.environ["ollama_host"]
    if os.environ.get("ollama_api_key"):
        config.ai.ollama_api_key = os.environ["ollama_api_key"]
    if os.environ.get("model_name"):
        config.ai.model = os.environ["model_name"]
    if os.environ.get("INBOXPILOT_DB"):
        config.storage.sqlite_path = os.environ["INBOXPILOT_DB"]
    if os.environ.get("INBOXPILOT_API_TOKEN"):
        config.api.service_token = os.environ["INBOXPILOT_API_TOKEN"]
    if os.environ.get("SCRAPER_API_KEY"):
        config.scraper.api_key = os.environ["SCRAPER_API_KEY"]
    if os.environ.get("LOG_LEVEL"):
        config.logging.level = os.environ["LOG_LEVEL"]
    return config


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from YAML file, merging with defaults.

    Also loads .env file and applies environment variable overrides.
    """
    _load_dotenv()

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        config_path = _find_config_file()

    if config_path is None:
        config = Config()
    else:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        config = _dict_to_config(raw)

    return _apply_env_overrides(config)
