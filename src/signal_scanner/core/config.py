"""
Configuration and environment loading for the scanner.
Loads .env, exposes Settings built from SCANNER_* variables and the
optional YAML file carrying scoring weights.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from signal_scanner.core.scoring import ScoringWeights

logger = logging.getLogger(__name__)

# Load .env from the working directory (or any parent) if present
load_dotenv()

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart"
YAHOO_SEARCH_URL = "https://query2.finance.yahoo.com/v1/finance/search"

DEFAULT_RELAYS: List[Tuple[str, str]] = [
    ("corsproxy", "https://corsproxy.io/?{url}"),
    ("allorigins", "https://api.allorigins.win/raw?url={url}"),
]


def get_env(key: str, default=None):
    val = os.environ.get(key, default)
    if val is None or val == "":
        return default
    return val


def parse_relays(raw: Optional[str]) -> List[Tuple[str, str]]:
    """Parse ``name=template,name=template``; templates carry a ``{url}`` placeholder."""
    if not raw:
        return list(DEFAULT_RELAYS)
    relays = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, template = part.partition("=")
        if not sep or "{url}" not in template:
            raise ValueError(f"Invalid relay definition: {part!r} (expected name=template with {{url}})")
        relays.append((name.strip(), template.strip()))
    return relays


class Settings(BaseModel):
    db_path: str = "scanner.db"
    cache_ttl: float = 30 * 60
    tracked_ttl: float = 30 * 60
    request_timeout: float = 10.0
    scan_delay: float = 0.25
    route_mode: str = Field("direct", description="'direct' or 'relay'")
    chart_base_url: str = YAHOO_CHART_URL
    search_base_url: str = YAHOO_SEARCH_URL
    relays: List[Tuple[str, str]] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    max_cache_bytes: int = 5_000_000
    config_path: Optional[str] = None
    log_level: str = "INFO"
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)


def get_settings() -> Settings:
    route_mode = get_env("SCANNER_ROUTE_MODE", "direct").lower()
    if route_mode not in ("direct", "relay"):
        raise ValueError(f"SCANNER_ROUTE_MODE must be 'direct' or 'relay', got {route_mode!r}")
    config_path = get_env("SCANNER_CONFIG")
    if config_path is None and Path("config.yaml").exists():
        config_path = "config.yaml"
    return Settings(
        db_path=get_env("SCANNER_DB_PATH", "scanner.db"),
        cache_ttl=float(get_env("SCANNER_CACHE_TTL", 30 * 60)),
        tracked_ttl=float(get_env("SCANNER_TRACKED_TTL", 30 * 60)),
        request_timeout=float(get_env("SCANNER_REQUEST_TIMEOUT", 10)),
        scan_delay=float(get_env("SCANNER_SCAN_DELAY", 0.25)),
        route_mode=route_mode,
        chart_base_url=get_env("SCANNER_CHART_BASE_URL", YAHOO_CHART_URL),
        search_base_url=get_env("SCANNER_SEARCH_BASE_URL", YAHOO_SEARCH_URL),
        relays=parse_relays(get_env("SCANNER_RELAYS")),
        max_cache_bytes=int(get_env("SCANNER_MAX_CACHE_BYTES", 5_000_000)),
        config_path=config_path,
        log_level=get_env("SCANNER_LOG_LEVEL", "INFO").upper(),
        scoring=load_scoring_weights(config_path),
    )


def load_scoring_weights(path: Optional[str]) -> ScoringWeights:
    """Read the ``scoring:`` section of a YAML config; missing keys keep their defaults."""
    if not path:
        return ScoringWeights()
    config_file = Path(path)
    if not config_file.exists():
        logger.warning("Config file %s not found, using default scoring weights", config_file)
        return ScoringWeights()
    with open(config_file, "r") as f:
        config: Dict = yaml.safe_load(f) or {}
    return ScoringWeights.model_validate(config.get("scoring") or {})


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
