# -*- coding: utf-8 -*-
"""Crawler configuration: defaults, JSON file, environment overrides."""

import json
import os
from typing import Any, Dict, List

from dotenv import load_dotenv

DEFAULT_PARTITIONS = ["1", "2", "3", "4", "5", "6", "S"]

DEFAULT_CONFIG: Dict[str, Any] = {
    # Target site
    "base_url": "https://shoob.gg",
    "list_url_template": "{base_url}/cards?page={page}&tier={partition}",
    "partitions": list(DEFAULT_PARTITIONS),
    "partition_limits": {"1": 805, "2": 549, "3": 440, "4": 360, "5": 138, "6": 35, "S": 8},
    "max_pages_per_partition": 5000,
    "start_page": 1,
    "end_page": 0,                 # 0 = no global upper bound
    # Concurrency
    "page_concurrency": 2,
    "item_concurrency": 4,
    # Storage
    "output_dir": "crawl_output",
    "output_file": "cards_data.json",
    "backup_file": "cards_data.backup.json",
    "snapshot_dir": "snapshots",
    "snapshot_every": 50,
    "max_snapshots": 10,
    "diagnostics_dir": "diagnostics",
    "start_empty_on_corruption": False,
    # Retries
    "max_attempts": 3,
    "retry_backoff_seconds": 2.5,
    "retry_backoff_mode": "linear",   # linear / fixed
    "scan_attempts": 3,
    "scan_backoff_seconds": 5.0,
    "page_rounds": 2,
    # Record policy
    "lenient_unresolved": False,
    "require_attribution": True,
    "completion_failure_ratio": 0.5,
    # Circuit breaker
    "breaker_consecutive_failures": 8,
    "breaker_success_floor": 0.3,
    "breaker_window": 50,
    "breaker_cooldown_seconds": 60.0,
    "network_down_cooldown_seconds": 120.0,
    "connectivity_probe_url": "https://www.google.com/generate_204",
    # Renderer
    "list_timeout_seconds": 60,
    "detail_timeout_seconds": 30,
    "detail_wait_seconds": 15,
    "list_settle_seconds": 4.0,
    "detail_settle_seconds": 2.5,
    "request_delay_min": 0.5,
    "request_delay_max": 1.5,
    "recycle_after": 20,
    "pool_acquire_timeout": 120.0,
    "headless": True,
    "browser_engine": "auto",          # auto / undetected / selenium
    # Sync
    "sync_token": "",
    "sync_repo_url": "",
    "sync_every": 10,
    "sync_path": ".",
    "log_level": "INFO",
}

# env var -> (config key, parser)
ENV_OVERRIDES = {
    "CRAWL_BASE_URL": ("base_url", "str"),
    "CRAWL_LIST_URL_TEMPLATE": ("list_url_template", "str"),
    "CRAWL_PARTITIONS": ("partitions", "list"),
    "CRAWL_PARTITION_LIMITS": ("partition_limits", "limits"),
    "CRAWL_START_PAGE": ("start_page", "int"),
    "CRAWL_END_PAGE": ("end_page", "int"),
    "CRAWL_PAGE_CONCURRENCY": ("page_concurrency", "int"),
    "CRAWL_ITEM_CONCURRENCY": ("item_concurrency", "int"),
    "CRAWL_OUTPUT_DIR": ("output_dir", "str"),
    "CRAWL_MAX_ATTEMPTS": ("max_attempts", "int"),
    "CRAWL_LENIENT": ("lenient_unresolved", "bool"),
    "CRAWL_HEADLESS": ("headless", "bool"),
    "CRAWL_LOG_LEVEL": ("log_level", "str"),
    "GITHUB_TOKEN": ("sync_token", "str"),
    "CRAWL_SYNC_REPO_URL": ("sync_repo_url", "str"),
}

_MIN_ONE = ("page_concurrency", "item_concurrency", "max_attempts", "scan_attempts", "recycle_after")


def parse_partition_limits(value: str) -> Dict[str, int]:
    limits: Dict[str, int] = {}
    for chunk in str(value or "").split(","):
        if ":" not in chunk:
            continue
        key, _, raw = chunk.partition(":")
        key = key.strip()
        try:
            limits[key] = int(raw.strip())
        except ValueError:
            continue
    return limits


def _parse_env_value(raw: str, kind: str) -> Any:
    if kind == "int":
        return int(raw)
    if kind == "bool":
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if kind == "list":
        return [part.strip() for part in raw.split(",") if part.strip()]
    if kind == "limits":
        return parse_partition_limits(raw)
    return raw


class Config:
    """Dictionary-backed configuration with defaults."""

    def __init__(self, config_file=None, use_env=False):
        self.config = json.loads(json.dumps(DEFAULT_CONFIG))
        self.config_file = config_file
        if config_file and os.path.exists(config_file):
            self.load(config_file)
        if use_env:
            self.apply_env()
        self.normalize()

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value

    def update(self, values: Dict[str, Any]) -> "Config":
        self.config.update(values)
        self.normalize()
        return self

    def load(self, filepath):
        """Merge a JSON config file over the current values."""
        with open(filepath, "r", encoding="utf-8") as f:
            loaded = json.load(f)
        if not isinstance(loaded, dict):
            raise ValueError(f"config file must contain a JSON object: {filepath}")
        self.config.update(loaded)

    def apply_env(self, environ=None):
        """Merge environment overrides (``.env`` is loaded first)."""
        if environ is None:
            load_dotenv()
            environ = os.environ
        for env_key, (key, kind) in ENV_OVERRIDES.items():
            raw = environ.get(env_key)
            if raw is None or not str(raw).strip():
                continue
            try:
                self.config[key] = _parse_env_value(str(raw).strip(), kind)
            except ValueError:
                continue
        self.normalize()

    def normalize(self):
        for key in _MIN_ONE:
            try:
                self.config[key] = max(1, int(self.config.get(key, DEFAULT_CONFIG[key])))
            except (TypeError, ValueError):
                self.config[key] = DEFAULT_CONFIG[key]
        ratio = self.config.get("completion_failure_ratio")
        if not isinstance(ratio, (int, float)) or not (0 < float(ratio) <= 1):
            self.config["completion_failure_ratio"] = DEFAULT_CONFIG["completion_failure_ratio"]
        low = float(self.config.get("request_delay_min") or 0)
        high = float(self.config.get("request_delay_max") or 0)
        self.config["request_delay_min"] = max(0.0, low)
        self.config["request_delay_max"] = max(self.config["request_delay_min"], high)
        self.config["partitions"] = [str(p) for p in self.config.get("partitions") or DEFAULT_PARTITIONS]
        self.config["partition_limits"] = {
            str(k): int(v) for k, v in dict(self.config.get("partition_limits") or {}).items()
        }

    @property
    def partitions(self) -> List[str]:
        return list(self.config["partitions"])

    def partition_order(self) -> Dict[str, int]:
        return {p: i for i, p in enumerate(self.config["partitions"])}

    def last_page(self, partition: str) -> int:
        limit = self.config["partition_limits"].get(str(partition))
        last = int(limit) if limit else int(self.config.get("max_pages_per_partition", 5000))
        end_page = int(self.config.get("end_page") or 0)
        if end_page > 0:
            last = min(last, end_page)
        return last

    def list_url(self, partition: str, page: int) -> str:
        return str(self.config["list_url_template"]).format(
            base_url=str(self.config["base_url"]).rstrip("/"),
            partition=partition,
            page=page,
        )

    def save(self, filepath):
        """Write the current values to a JSON file."""
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(self.config, f, ensure_ascii=False, indent=2)
