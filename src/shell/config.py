"""Configuration loading — merges settings.toml and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

DEFAULT_DEFILLAMA_URL = "https://yields.llama.fi"
DEPLOYABLE_SOURCES = ("debt", "balances")


@dataclass
class RebalanceConfig:
    interval_hours: float = 6.0
    settle_delay_seconds: float = 5.0
    dust_threshold: float = 1.0         # idle pulls and deployable totals below this are ignored
    idle_buffer: float = 1.0            # held back in "balances" mode
    min_operation_amount: float = 1.0   # strategies skip deposits/withdrawals below this
    deployable_source: str = "debt"     # "debt" | "balances"
    report_after_cycle: bool = False


@dataclass
class TimeoutConfig:
    query_seconds: float = 30.0
    operation_seconds: float = 900.0    # deposits may bridge cross-chain
    ledger_seconds: float = 60.0


@dataclass
class DataConfig:
    defillama_url: str = DEFAULT_DEFILLAMA_URL
    cache_seconds: float = 300.0
    http_timeout_seconds: float = 30.0


@dataclass
class PaperConfig:
    initial_idle: float = 100.0
    initial_cash: float = 0.0


@dataclass
class StrategyConfig:
    name: str
    enabled: bool = True
    min_debt: float = 0.0
    max_debt: float = 1_000_000.0
    apy: Optional[float] = None
    tvl: Optional[float] = None
    defillama_pool: str = ""


@dataclass
class Config:
    mode: str = "paper"
    log_level: str = "INFO"
    token_symbol: str = "USDC"
    token_decimals: int = 6
    rebalance: RebalanceConfig = field(default_factory=RebalanceConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    data: DataConfig = field(default_factory=DataConfig)
    paper: PaperConfig = field(default_factory=PaperConfig)
    strategies: list[StrategyConfig] = field(default_factory=list)
    db_path: str = ""

    def is_paper(self) -> bool:
        return self.mode == "paper"

    @property
    def enabled_strategies(self) -> list[StrategyConfig]:
        return [s for s in self.strategies if s.enabled]


def load_config(settings_path: Path | None = None) -> Config:
    """Load configuration from settings.toml and environment variables."""
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "router.db")

    settings_path = settings_path or CONFIG_DIR / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.mode = general.get("mode", config.mode)
        config.log_level = general.get("log_level", config.log_level)
        config.token_symbol = general.get("token_symbol", config.token_symbol)
        config.token_decimals = general.get("token_decimals", config.token_decimals)

        reb = settings.get("rebalance", {})
        for key in vars(config.rebalance):
            if key in reb:
                setattr(config.rebalance, key, reb[key])

        timeouts = settings.get("timeouts", {})
        for key in vars(config.timeouts):
            if key in timeouts:
                setattr(config.timeouts, key, timeouts[key])

        data = settings.get("data", {})
        config.data.defillama_url = data.get("defillama_url", config.data.defillama_url)
        config.data.cache_seconds = data.get("cache_seconds", config.data.cache_seconds)
        config.data.http_timeout_seconds = data.get("http_timeout_seconds", config.data.http_timeout_seconds)

        paper = settings.get("paper", {})
        config.paper.initial_idle = paper.get("initial_idle", config.paper.initial_idle)
        config.paper.initial_cash = paper.get("initial_cash", config.paper.initial_cash)

        config.strategies = [
            StrategyConfig(
                name=s["name"],
                enabled=s.get("enabled", True),
                min_debt=s.get("min_debt", 0.0),
                max_debt=s.get("max_debt", 1_000_000.0),
                apy=s.get("apy"),
                tvl=s.get("tvl"),
                defillama_pool=s.get("defillama_pool", ""),
            )
            for s in settings.get("strategies", [])
        ]

        if "db_path" in general:
            config.db_path = str(PROJECT_ROOT / general["db_path"])

    # Environment overrides
    config.data.defillama_url = os.getenv("DEFILLAMA_URL", config.data.defillama_url)
    config.log_level = os.getenv("LOG_LEVEL", config.log_level)

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    errors = []
    reb = config.rebalance

    if config.mode != "paper":
        errors.append(f"mode must be 'paper' (no live ledger is bundled), got '{config.mode}'")
    if not (0 <= config.token_decimals <= 18):
        errors.append(f"token_decimals must be 0-18, got {config.token_decimals}")
    if reb.interval_hours <= 0:
        errors.append(f"rebalance.interval_hours must be > 0, got {reb.interval_hours}")
    if reb.settle_delay_seconds < 0:
        errors.append(f"rebalance.settle_delay_seconds must be >= 0, got {reb.settle_delay_seconds}")
    if reb.dust_threshold < 0:
        errors.append(f"rebalance.dust_threshold must be >= 0, got {reb.dust_threshold}")
    if reb.idle_buffer < 0:
        errors.append(f"rebalance.idle_buffer must be >= 0, got {reb.idle_buffer}")
    if reb.min_operation_amount < 0:
        errors.append(f"rebalance.min_operation_amount must be >= 0, got {reb.min_operation_amount}")
    if reb.deployable_source not in DEPLOYABLE_SOURCES:
        errors.append(f"rebalance.deployable_source must be one of {DEPLOYABLE_SOURCES}, got '{reb.deployable_source}'")

    for key, value in vars(config.timeouts).items():
        if value <= 0:
            errors.append(f"timeouts.{key} must be > 0, got {value}")

    if config.data.cache_seconds < 0:
        errors.append(f"data.cache_seconds must be >= 0, got {config.data.cache_seconds}")
    if config.paper.initial_idle < 0 or config.paper.initial_cash < 0:
        errors.append("paper balances must be >= 0")

    names = [s.name for s in config.strategies]
    if len(names) != len(set(names)):
        errors.append(f"Strategy names must be unique, got {names}")
    for s in config.strategies:
        if s.min_debt < 0:
            errors.append(f"{s.name}: min_debt must be >= 0, got {s.min_debt}")
        if s.max_debt < 0:
            errors.append(f"{s.name}: max_debt must be >= 0, got {s.max_debt}")
        if not s.defillama_pool and (s.apy is None or s.tvl is None):
            errors.append(f"{s.name}: needs either defillama_pool or both apy and tvl")
        if s.apy is not None and s.apy < 0:
            errors.append(f"{s.name}: apy must be >= 0, got {s.apy}")
        if s.tvl is not None and s.tvl < 0:
            errors.append(f"{s.name}: tvl must be >= 0, got {s.tvl}")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
