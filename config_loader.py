"""
Configuration loader for the attribution pipeline.
Loads config from JSON file and provides validation.
"""
import json
import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional


class ConfigLoader:
    """Singleton configuration loader with validation."""

    _instance = None
    _config: Dict[str, Any] = {}
    _loaded = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigLoader, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        """Load configuration from JSON file on first instantiation."""
        if not self._loaded:
            config_path = os.getenv("ATTRIBUTION_CONFIG", "config.json")
            self._load_config(config_path)
            self._validate()
            self._loaded = True

    def _load_config(self, config_path: str):
        """Load and parse the configuration file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}. "
                "Please create it from config.json or set ATTRIBUTION_CONFIG env var."
            )

        with open(config_file, "r") as f:
            self._config = json.load(f)

    def _validate(self):
        """Validate required sections and value ranges."""
        required_sections = [
            "paths",
            "attribution",
            "quintiles",
            "images",
            "dashboard",
        ]
        missing = [s for s in required_sections if s not in self._config]
        if missing:
            raise ValueError(f"Missing required config sections: {missing}")

        mode = self.get("quintiles.mode", "fixed")
        if mode not in ("fixed", "dynamic"):
            raise ValueError(
                f"quintiles.mode must be 'fixed' or 'dynamic', got {mode!r}"
            )

        probabilities = self.get("quintiles.probabilities")
        if not isinstance(probabilities, list) or len(probabilities) != 6:
            raise ValueError(
                f"quintiles.probabilities must list 6 probabilities, got {probabilities}"
            )

        # Fixed boundaries are a pinned snapshot artifact and must be named
        boundaries = self.get("quintiles.boundaries")
        labels = self.get("quintiles.labels")
        if mode == "fixed":
            if not self.get("quintiles.version"):
                raise ValueError("quintiles.version is required in fixed mode")
            if not isinstance(boundaries, list) or len(boundaries) != 6:
                raise ValueError(
                    f"quintiles.boundaries must list 6 values, got {boundaries}"
                )
            if any(lo >= hi for lo, hi in zip(boundaries, boundaries[1:])):
                raise ValueError(
                    f"quintiles.boundaries must be strictly increasing, got {boundaries}"
                )
            if not isinstance(labels, list) or len(labels) != 5:
                raise ValueError(f"quintiles.labels must list 5 labels, got {labels}")

        trigger_levels = self.get("attribution.trigger_levels")
        pre_label = self.get("attribution.pre_contact_label")
        if not trigger_levels or pre_label not in trigger_levels:
            raise ValueError(
                "attribution.trigger_levels must include attribution.pre_contact_label"
            )

        low = self.get("dashboard.sales_range.min")
        high = self.get("dashboard.sales_range.max")
        if not isinstance(low, int) or not isinstance(high, int) or low > high:
            raise ValueError(
                f"dashboard.sales_range must be integers with min <= max, got ({low}, {high})"
            )

        ttl = self.get("cache.ttl_seconds", 0)
        if not isinstance(ttl, (int, float)) or ttl < 0:
            raise ValueError(f"cache.ttl_seconds must be non-negative, got {ttl}")

        # Raises on malformed ISO date
        self.get_today()

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key_path: Dot-separated path like 'paths.sales_file' or 'quintiles.labels'
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            config.get('paths.output_file')
            config.get('dashboard.top_n', 20)
        """
        keys = key_path.split(".")
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_today(self) -> Optional[date]:
        """
        Return the pinned run date from 'attribution.today', or None.

        A pinned date makes the open-ended last window reproducible; None means
        the caller uses the current date.
        """
        raw = self.get("attribution.today")
        if raw is None:
            return None
        try:
            return date.fromisoformat(raw)
        except (TypeError, ValueError):
            raise ValueError(
                f"attribution.today must be an ISO date (YYYY-MM-DD) or null, got {raw!r}"
            )

    def get_path(
        self, path_key: str, create: bool = False, base_dir: str = None
    ) -> Path:
        """
        Get a path from config and optionally create the directory.

        Args:
            path_key: Key to path in config (e.g., 'paths.logs_dir')
            create: If True, create the directory
            base_dir: Base directory for relative paths (defaults to current dir)

        Returns:
            Path object (absolute)
        """
        path_str = self.get(path_key)
        if not path_str:
            raise ValueError(f"Path key '{path_key}' not found in config")

        path = Path(path_str)

        # Make absolute if relative
        if not path.is_absolute():
            if base_dir:
                path = Path(base_dir) / path
            else:
                path = Path.cwd() / path

        if create:
            path.mkdir(parents=True, exist_ok=True)

        return path

    def reload(self):
        """Force reload configuration from file (useful for testing)."""
        self._loaded = False
        self.__init__()


# Global singleton instance
_loader = None


def load_config() -> ConfigLoader:
    """Get or create the global configuration loader instance."""
    global _loader
    if _loader is None:
        _loader = ConfigLoader()
    return _loader
