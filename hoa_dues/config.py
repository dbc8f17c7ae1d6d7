"""
HOA Dues Engine -- Configuration Module

Centralizes runtime configuration for the dues engine.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

HOA display strings and payment instructions are *not* here: they live in
the ``hoa_config`` collection and are read through the document store.

Usage:
    from hoa_dues.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.email.sender_address)            # treasurer@example.org
    print(cfg.notices.comm_type)               # "Dues Notice"
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # hoa_dues/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
PACKAGE_TEMPLATE_DIR = _THIS_DIR / "templates"


def _resolve(rel_path: str) -> Path:
    p = Path(rel_path)
    if not p.is_absolute():
        p = PROJECT_ROOT / p
    return p


# ===================================================================
# 1. Document Store
# ===================================================================

@dataclass
class StoreSettings:
    """Where the SQLite document store lives."""
    db_path: str = "data/hoa_dues.db"

    @property
    def resolved_path(self) -> Path:
        return _resolve(self.db_path)


# ===================================================================
# 2. Event Outbox
# ===================================================================

@dataclass
class OutboxSettings:
    """SQLite outbox used as the dispatch event bus."""
    db_path: str = "data/hoa_outbox.db"
    max_attempts: int = 5            # failed handler runs before an event is parked
    batch_limit: int = 100           # events drained per dispatch run
    backoff_steps: list[int] = field(default_factory=lambda: [30, 120, 600])   # seconds

    @property
    def resolved_path(self) -> Path:
        return _resolve(self.db_path)


# ===================================================================
# 3. Email Delivery
# ===================================================================

@dataclass
class EmailSettings:
    """SMTP transport and sender identity.

    ``test_recipient`` redirects every outgoing message to a single address
    when set.  ``dry_run`` swaps the SMTP sender for one that only logs.
    """
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    username: str = ""        # set via env var HOA_SMTP_USERNAME
    password: str = ""        # set via env var HOA_SMTP_PASSWORD
    sender_address: str = "treasurer@example.org"
    sender_name: str = "HOA Treasurer"
    test_recipient: str = ""
    dry_run: bool = False
    timeout_seconds: int = 30

    def __post_init__(self):
        self.username = self.username or os.environ.get("HOA_SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("HOA_SMTP_PASSWORD", "")


# ===================================================================
# 4. Notice Campaign
# ===================================================================

@dataclass
class NoticeSettings:
    """Values stamped on communication records and used by the dispatcher."""
    comm_type: str = "Dues Notice"
    comm_desc: str = "Sent to Owner email"
    comm_id: int = 9999
    dispatch_actor: str = "SendMail"
    subject_suffix: str = "Dues Notice"
    payment_subject_suffix: str = "Payment Confirmation"
    payment_lookback_days: int = 365
    dues_owed_threshold: str = "0.01"
    orphan_age_hours: int = 24
    recent_notice_limit: int = 200

    @property
    def threshold(self) -> Decimal:
        return Decimal(str(self.dues_owed_threshold))


# ===================================================================
# 5. Template Paths
# ===================================================================

@dataclass
class TemplatePaths:
    """Where the HTML Jinja2 templates live."""
    template_dir: str = ""
    dues_notice: str = "dues_notice.html"
    payment_confirmation: str = "payment_confirmation.html"

    @property
    def resolved_dir(self) -> Path:
        if not self.template_dir:
            return PACKAGE_TEMPLATE_DIR
        return _resolve(self.template_dir)


# ===================================================================
# 6. Logging
# ===================================================================

@dataclass
class LoggingSettings:
    level: str = "INFO"
    log_file: str = ""


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class HoaDuesConfig:
    """Top-level configuration container for the HOA dues engine."""
    store: StoreSettings = field(default_factory=StoreSettings)
    outbox: OutboxSettings = field(default_factory=OutboxSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    notices: NoticeSettings = field(default_factory=NoticeSettings)
    template_paths: TemplatePaths = field(default_factory=TemplatePaths)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: HoaDuesConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a HoaDuesConfig instance."""
    _section_map = {
        "store": cfg.store,
        "outbox": cfg.outbox,
        "email": cfg.email,
        "notices": cfg.notices,
        "template_paths": cfg.template_paths,
        "logging": cfg.logging,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> HoaDuesConfig:
    """Build a HoaDuesConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated HoaDuesConfig instance.
    """
    cfg = HoaDuesConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg
