import os

import yaml
from pathlib import Path

PACKAGE_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = PACKAGE_DIR / "default.yaml"
CONFIG_PATH = Path("./local.yaml") if os.path.exists("./local.yaml") else DEFAULT_CONFIG_PATH


def _load(path):
    with open(path) as f:
        return yaml.safe_load(f) or {}


def get_config(default = False):
    """Load the configuration, with ./local.yaml layered over the packaged defaults."""

    cfg = _load(DEFAULT_CONFIG_PATH)
    if default or CONFIG_PATH == DEFAULT_CONFIG_PATH:
        return cfg

    local = _load(CONFIG_PATH)
    for k, v in local.items():
        if isinstance(v, dict) and isinstance(cfg.get(k), dict):
            cfg[k] = {**cfg[k], **v}
        else:
            cfg[k] = v
    return cfg


cfg = get_config()

# Constants
DATA_DIR = Path(cfg.get("data_dir", "./data"))
DEFAULT_ANNOTATIONS_PATH = DATA_DIR / cfg.get("annotations_filename", "")
DEFAULT_FASTA_PATH = DATA_DIR / cfg.get("fasta_filename", "") if cfg.get("fasta_filename") else None

DEFAULT_WINDOW_SIZE = int(cfg.get("search", {}).get("window_size", 100000))
DEFAULT_TIMEOUT = cfg.get("search", {}).get("timeout")
LOG_LEVEL = cfg.get("logging", {}).get("level", "WARNING")


def get_paths():
    return str(DEFAULT_ANNOTATIONS_PATH), str(DEFAULT_FASTA_PATH) if DEFAULT_FASTA_PATH else None
