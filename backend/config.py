import yaml
import os
import copy
import stat
import logging

logger = logging.getLogger(__name__)

if os.environ.get("UNMASK_APPDATA_DIR"):
    CONFIG_DIR = os.environ["UNMASK_APPDATA_DIR"]
elif os.name == 'nt':
    CONFIG_DIR = os.path.join(os.environ['APPDATA'], 'Unmask')
else:
    CONFIG_DIR = os.path.join(os.path.expanduser('~'), '.unmask')

if not os.path.exists(CONFIG_DIR):
    os.makedirs(CONFIG_DIR, exist_ok=True)

CONFIG_PATH = os.path.join(CONFIG_DIR, "config.yaml")
DATA_DIR = os.path.join(CONFIG_DIR, "data")


def _ensure_private_permissions() -> bool:
    """
    Best-effort permission hardening on POSIX systems:
      - config dir: 700
      - config file: 600
    The config file holds provider API keys.
    """
    if os.name == "nt":
        return False
    changed = False
    try:
        if os.path.isdir(CONFIG_DIR):
            mode = stat.S_IMODE(os.stat(CONFIG_DIR).st_mode)
            if mode != 0o700:
                os.chmod(CONFIG_DIR, 0o700)
                changed = True
    except Exception as e:
        logger.debug(f"Could not harden CONFIG_DIR permissions: {e}")
    try:
        if os.path.exists(CONFIG_PATH):
            mode = stat.S_IMODE(os.stat(CONFIG_PATH).st_mode)
            if mode != 0o600:
                os.chmod(CONFIG_PATH, 0o600)
                changed = True
    except Exception as e:
        logger.debug(f"Could not harden CONFIG_PATH permissions: {e}")
    return changed


DEFAULT_CONFIG = {
    "chunking": {
        "break_gap_minutes": 90,
        "day_break_gap_minutes": 20,
        "max_chunk_messages": 12,
    },
    "pipeline": {
        "batch_size": 3,
        "batch_delay_seconds": 2.0,
    },
    "classifier": {
        "provider": "openai",  # "openai" | "anthropic" | "ollama"
        "model": "gpt-4o-mini",
        "api_key": "",
        "api_base_url": "",
        "temperature": 0.3,
        "max_tokens": 400,
        "timeout_seconds": 30,
    },
    "embeddings": {
        "provider": "openai",  # "openai" | "local" | "fallback"
        "model": "text-embedding-3-small",
        "api_key": "",
        "api_base_url": "",
        "local_model": "BAAI/bge-large-en-v1.5",
        "timeout_seconds": 30,
    },
    "search": {
        "default_top_k": 10,
    },
}

_SECTIONS = ("chunking", "pipeline", "classifier", "embeddings", "search")

_config_cache = None


def _merge_defaults(config: dict) -> dict:
    original = config if isinstance(config, dict) else {}
    merged = {**copy.deepcopy(DEFAULT_CONFIG), **original}
    for section in _SECTIONS:
        current = original.get(section)
        merged[section] = {
            **DEFAULT_CONFIG.get(section, {}),
            **(current if isinstance(current, dict) else {}),
        }
    return merged


def load_config(force_reload: bool = False) -> dict:
    global _config_cache
    if _config_cache and not force_reload:
        return _config_cache

    if not os.path.exists(CONFIG_PATH):
        _config_cache = copy.deepcopy(DEFAULT_CONFIG)
        try:
            save_config(_config_cache)
        except Exception as e:
            logger.warning(f"Could not write default config to {CONFIG_PATH}: {e}")
        return _config_cache

    with open(CONFIG_PATH, "r") as f:
        original = yaml.safe_load(f) or {}

    # Deep-merge all known defaults so minimal/legacy configs are still fully usable.
    merged = _merge_defaults(original)
    needs_save = merged != original
    _config_cache = merged

    if needs_save:
        try:
            save_config(_config_cache)
        except Exception:
            # Best-effort persistence; runtime config remains usable even if save fails.
            pass
    else:
        _ensure_private_permissions()

    return _config_cache


def save_config(config: dict):
    global _config_cache
    merged = _merge_defaults(config)
    _config_cache = merged
    with open(CONFIG_PATH, "w") as f:
        yaml.dump(merged, f, default_flow_style=False)
    _ensure_private_permissions()

