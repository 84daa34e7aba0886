import os
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Chain description
CHAIN_CONFIG_PATH = Path(os.getenv("SNIPER_CHAIN_CONFIG", Path(__file__).parent / "pulsechain.yaml"))


def load_chain_config(path=None):
    """Load chain description from pulsechain.yaml"""
    config_path = Path(path) if path else CHAIN_CONFIG_PATH
    if config_path.exists():
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}
    return {}


def _apply_env_overrides(config: dict) -> dict:
    chain = config.setdefault('chain', {})
    if os.getenv("PULSECHAIN_RPC_URL"):
        chain['rpc_url'] = os.getenv("PULSECHAIN_RPC_URL")
    if os.getenv("PULSECHAIN_WS_URL"):
        chain['ws_url'] = os.getenv("PULSECHAIN_WS_URL")
    return config


def get_chain_config(path=None) -> dict:
    """Chain description with environment overrides applied"""
    return _apply_env_overrides(load_chain_config(path))


# Load chain config on import
CHAIN_CONFIG = get_chain_config()

# Runtime settings
PRIVATE_KEY = os.getenv("SNIPER_PRIVATE_KEY", "")
DB_PATH = os.getenv("SNIPER_DB_PATH", "data/sniper.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
