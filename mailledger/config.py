"""YAML configuration loader for mailledger.

Loads two files from the config/ directory:
  settings.yaml    currencies, extractor choice, sync and reconcile knobs
  extraction.yaml  merchant_categories, subscription_services, categories
"""

from pathlib import Path

import yaml

EXTRACTORS = ("pattern", "claude")


class Config:
    """Loads and provides access to the YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._settings: dict | None = None
        self._extraction: dict | None = None

    def _load(self, filename: str) -> dict:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping at the top of {path}")
        return data

    @property
    def settings(self) -> dict:
        if self._settings is None:
            self._settings = self._load("settings.yaml")
        return self._settings

    @property
    def extraction(self) -> dict:
        if self._extraction is None:
            self._extraction = self._load("extraction.yaml")
        return self._extraction

    def _section(self, name: str) -> dict:
        section = self.settings.get(name) or {}
        if not isinstance(section, dict):
            raise ValueError(f"settings.yaml: '{name}' must be a mapping")
        return section

    # ── Currencies ────────────────────────────────────────

    @property
    def reporting_currency(self) -> str:
        """Currency the ledger reports in; other currencies are not stored."""
        return str(self.settings.get("reporting_currency", "INR")).upper()

    @property
    def default_currency(self) -> str:
        """Assumed currency for extracted amounts that declare none."""
        return str(self.settings.get("default_currency", "INR")).upper()

    # ── Extraction ────────────────────────────────────────

    @property
    def extractor(self) -> str:
        name = str(self.settings.get("extractor", "pattern")).lower()
        if name not in EXTRACTORS:
            raise ValueError(
                f"Unknown extractor '{name}', expected one of {', '.join(EXTRACTORS)}"
            )
        return name

    @property
    def merchant_categories(self) -> dict[str, str]:
        return self.extraction.get("merchant_categories", {}) or {}

    @property
    def subscription_services(self) -> dict[str, dict]:
        return self.extraction.get("subscription_services", {}) or {}

    @property
    def categories(self) -> list[str]:
        return self.extraction.get("categories", []) or []

    # ── Sync ──────────────────────────────────────────────

    @property
    def days_back(self) -> int:
        return int(self._section("sync").get("days_back", 30))

    @property
    def max_results(self) -> int:
        return int(self._section("sync").get("max_results", 500))

    # ── Reconcile ─────────────────────────────────────────

    @property
    def fuzzy_threshold(self) -> float:
        value = float(self._section("reconcile").get("fuzzy_threshold", 0.8))
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"fuzzy_threshold must be between 0 and 1, got {value}")
        return value

    @property
    def reversal_window_days(self) -> int:
        return int(self._section("reconcile").get("reversal_window_days", 30))

    @property
    def reversal_lookback(self) -> int:
        return int(self._section("reconcile").get("reversal_lookback", 5))

    # ── Claude ────────────────────────────────────────────

    @property
    def claude_model(self) -> str:
        return self._section("claude").get("model", "claude-sonnet-4-20250514")

    @property
    def claude_max_tokens(self) -> int:
        return int(self._section("claude").get("max_tokens", 1024))
