"""
Runtime config for dabsearch.

It's just a dict. Load it, override it, save it.
Every tunable number in the crawler, ranker, delivery loop and server
lives here as a default. Config files only store what differs.

Usage:
    cfg = load_config("dabsearch.json")          # defaults + file, if it exists
    cfg["crawl"]["max_depth"]                     # read a value
    cfg = with_overrides(cfg, {"server": {"port": 8080}})
    save_config("dabsearch.json", cfg)            # saves only non-default values
"""

import copy
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


# ── Defaults ────────────────────────────────────────────────────────────

DEFAULTS = {
    "crawl": {
        "seed": "https://tolagaming.github.io/crawlerdream/",
        "max_depth": 5,              # 0 = don't crawl, just serve the stored index
        "max_concurrency": 10,       # fetches in flight at once
        "fetch_timeout": 10.0,       # seconds per page
        "user_agent": "dabsearch/0.1",
    },

    "rank": {
        "interval": 1.0,             # seconds between full recomputations
        "backlink_weight": 10,       # rank added per distinct referring page
    },

    "delivery": {
        "interval": 0.1,             # seconds between drain ticks, one event per tick
        "max_pending": 10000,        # oldest event is dropped past this; 0 = unbounded
        "startup_replay_limit": 100, # loaded pages queued for viewers at startup
        "send_timeout": 5.0,         # seconds before a stalled viewer is skipped
    },

    "storage": {
        "path": "data.json",
    },

    "server": {
        "host": "0.0.0.0",
        "port": 3000,
    },

    "search": {
        "page_size": 10,
    },
}


# ── Helpers ─────────────────────────────────────────────────────────────

def _deep_merge(base: dict, overlay: dict) -> dict:
    """Merge overlay into base recursively. Returns new dict."""
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _diff_from_defaults(cfg: dict, defaults: dict = None) -> dict:
    """Return only the values that differ from defaults."""
    if defaults is None:
        defaults = DEFAULTS
    diff = {}
    for key, value in cfg.items():
        if key not in defaults:
            diff[key] = value
        elif isinstance(value, dict) and isinstance(defaults.get(key), dict):
            sub = _diff_from_defaults(value, defaults[key])
            if sub:
                diff[key] = sub
        elif value != defaults.get(key):
            diff[key] = value
    return diff


# ── Public API ──────────────────────────────────────────────────────────

def load_config(path: str = "") -> dict:
    """
    Load config from a JSON file merged over the defaults.
    No path, a missing file or a corrupt file all give pure defaults.
    """
    cfg = copy.deepcopy(DEFAULTS)
    if path:
        p = Path(path)
        if p.exists():
            try:
                with open(p) as f:
                    saved = json.load(f)
                if not isinstance(saved, dict):
                    raise ValueError("config must be a JSON object")
                cfg = _deep_merge(cfg, saved)
            except (json.JSONDecodeError, ValueError, OSError) as e:
                logger.error("ignoring config %s: %s", p, e)
        else:
            logger.warning("config %s not found, using defaults", p)
    return cfg


def save_config(path: str, cfg: dict):
    """Save config, storing only values that differ from defaults."""
    p = Path(path)
    diff = _diff_from_defaults(cfg)
    if diff:
        with open(p, "w") as f:
            json.dump(diff, f, indent=2)
    elif p.exists():
        p.unlink()


def with_overrides(cfg: dict, overrides: dict) -> dict:
    """Apply overrides to a config. Returns new dict."""
    return _deep_merge(cfg, overrides)
