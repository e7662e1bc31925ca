import json
from typing import Dict, Any, List
from pathlib import Path

class Config:
    """Business configuration loaded from a JSON file (deposit pricing, packages, cron limits)"""

    def __init__(self, config_file: str = "config.json"):
        self.config_file = config_file
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from JSON file"""
        config_path = Path(__file__).parent / self.config_file

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key (supports dot notation)"""
        keys = key.split('.')
        value = self._config

        try:
            for k in keys:
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def get_token_price_vnd(self) -> int:
        """Price in VND of one pricing unit (1M tokens by default)"""
        return int(self.get("deposit.token_price_vnd", 500000))

    def get_tokens_per_price_unit(self) -> int:
        return int(self.get("deposit.tokens_per_price_unit", 1000000))

    def get_order_code_prefix(self) -> str:
        return str(self.get("deposit.order_code_prefix", "OP"))

    def get_deposit_packages(self) -> List[Dict[str, Any]]:
        """Get the token packages offered on the pricing page"""
        return list(self.get("deposit.packages", []) or [])

    def get_max_jobs_per_user(self) -> int:
        """0 disables the per-user cronjob limit"""
        return int(self.get("cronjobs.max_jobs_per_user", 0) or 0)

    def get_preview_runs(self) -> int:
        return int(self.get("cronjobs.preview_runs", 5))

# Global configuration instance
config = Config()
