from pathlib import Path
from typing import Dict, Optional
from pydantic import BaseModel, Field
import tomllib
import os
import random

SNIPR_ROOT = Path(os.getenv("SNIPR_ROOT", Path.home() / ".snipr"))

_UA_POOL = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_5) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/605.1.15",
]


class PollingCfg(BaseModel):
    tick_milliseconds: int = 990
    # a bit over an hour, so slow polls drift away from hourly patterns
    slow_minutes: int = 69
    fast_minutes: int = 1
    ending_window_minutes: int = 60
    end_grace_seconds: int = 60
    checkpoint_minutes: int = 10


class NetworkCfg(BaseModel):
    rotate_user_agents: bool = True
    use_proxies: bool = False
    proxy_file: str = "proxies.txt"
    retry_backoff_seconds: int = 10


class StorageCfg(BaseModel):
    savefile: str = "auctions.xml"
    database_url: Optional[str] = None
    cache_size: int = 512
    server_name: str = "snipr"

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{SNIPR_ROOT / 'data' / 'snipr.sqlite'}"


class SnipeCfg(BaseModel):
    lead_milliseconds: int = 10_000


class Settings(BaseModel):
    polling: PollingCfg = PollingCfg()
    network: NetworkCfg = NetworkCfg()
    storage: StorageCfg = StorageCfg()
    snipe: SnipeCfg = SnipeCfg()
    # seeds for the runtime (string-keyed) configuration
    config: Dict[str, str] = Field(default_factory=dict)

    # ---- helpers -----------------------------------------------------

    def random_headers(self) -> dict[str, str]:
        ua = random.choice(_UA_POOL) if self.network.rotate_user_agents else _UA_POOL[0]
        return {
            "User-Agent": ua,
            "Accept-Language": "en-US,en;q=0.9",
        }

    def random_proxy(self) -> Optional[str]:
        if not self.network.use_proxies:
            return None
        lines = Path(self.network.proxy_file).read_text().splitlines()
        return random.choice(lines).strip()


def load_settings() -> Settings:
    cfg_path = Path(os.getenv("SNIPR_CONFIG", "snipr.toml"))
    raw = tomllib.loads(cfg_path.read_text()) if cfg_path.exists() else {}
    return Settings.model_validate(raw)
