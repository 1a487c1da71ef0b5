"""Configuration loading from environment variables and memlayer.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_ROOT = Path.home() / ".memlayer"
_CONFIG_FILENAME = "memlayer.toml"


@dataclass
class StorageConfig:
    """Where the ledger and the similarity index live."""

    root: Path = _DEFAULT_ROOT
    max_content_length: int = 20000
    dedupe_window_seconds: int = 300
    busy_timeout: float = 5.0

    @property
    def ledger_path(self) -> Path:
        return self.root / "ledger.db"

    @property
    def index_path(self) -> Path:
        return self.root / "index"


@dataclass
class EmbeddingConfig:
    """Embedding backend selection."""

    provider: str = "local"
    model: str = "all-MiniLM-L6-v2"
    openai_model: str = "text-embedding-3-small"
    device: str = "cpu"
    batch_size: int = 32
    timeout: float = 30.0


@dataclass
class OutboxConfig:
    """Embedding outbox drain settings."""

    batch_size: int = 32
    poll_interval: float = 1.0
    claim_timeout: float = 120.0
    index_timeout: float = 10.0
    max_attempts: int = 5


@dataclass
class RetrievalConfig:
    """Progressive disclosure thresholds, token budget and cache lifetimes."""

    top_k: int = 10
    min_score: float = 0.7
    window_size: int = 3
    high_confidence_threshold: float = 0.92
    clear_winner_threshold: float = 0.85
    score_gap_threshold: float = 0.10
    ambiguous_threshold: float = 0.80
    max_auto_expand: int = 3
    max_total_tokens: int = 2000
    layer1_per_item: int = 50
    layer2_per_item: int = 40
    chars_per_token: int = 4
    layer1_ttl: float = 60.0
    layer2_ttl: float = 300.0
    layer3_ttl: float = 900.0
    cache_size: int = 256


@dataclass
class GraduationConfig:
    """Usage thresholds for level promotion and the retention horizon."""

    window_days: int = 14
    l2_min_uses: int = 3
    l3_min_sessions: int = 3
    l4_min_uses: int = 10
    retention_days: int = 30
    insight_lookback_days: int = 7
    insight_min_repeats: int = 2


@dataclass
class SchedulerConfig:
    """Scheduler configuration."""

    graduation_interval: int = 300
    retention_cron: str = "0 4 * * *"


@dataclass
class PrivacyConfig:
    """Masking applied by capture hooks before content reaches the ledger."""

    exclude_patterns: list[str] = field(
        default_factory=lambda: ["password", "secret", "api_key", "token", "bearer"]
    )
    private_tags: bool = True
    excluded_tools: list[str] = field(default_factory=lambda: ["TodoWrite", "TodoRead"])


@dataclass
class MemlayerConfig:
    """Top-level memlayer configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    graduation: GraduationConfig = field(default_factory=GraduationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    log_level: str = "INFO"

    @property
    def pid_file(self) -> Path:
        return self.storage.root / "memlayer.pid"


def _section(cls, data: dict):
    """Build a config dataclass from a TOML table, ignoring unknown keys."""
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_config(config_path: Path | None = None) -> MemlayerConfig:
    """Load configuration from environment variables and optional memlayer.toml.

    Priority: environment variables > memlayer.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.memlayer/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_ROOT / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    storage_data = dict(file_data.get("storage", {}))
    embedding_data = dict(file_data.get("embedding", {}))

    root = os.getenv("MEMLAYER_DIR", storage_data.pop("root", None))
    storage = _section(StorageConfig, storage_data)
    if root:
        storage.root = Path(root).expanduser()

    embedding = _section(EmbeddingConfig, embedding_data)
    embedding.provider = os.getenv("MEMLAYER_EMBEDDING_PROVIDER", embedding.provider)
    embedding.model = os.getenv("MEMLAYER_EMBEDDING_MODEL", embedding.model)
    embedding.timeout = float(os.getenv("MEMLAYER_EMBED_TIMEOUT", embedding.timeout))

    config = MemlayerConfig(
        storage=storage,
        embedding=embedding,
        outbox=_section(OutboxConfig, file_data.get("outbox", {})),
        retrieval=_section(RetrievalConfig, file_data.get("retrieval", {})),
        graduation=_section(GraduationConfig, file_data.get("graduation", {})),
        scheduler=_section(SchedulerConfig, file_data.get("scheduler", {})),
        privacy=_section(PrivacyConfig, file_data.get("privacy", {})),
        log_level=os.getenv("MEMLAYER_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
