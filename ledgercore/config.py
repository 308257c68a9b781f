"""
Core Configuration

Centralized configuration for the ledger, workflow runner and cache.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass
class StoreConfig:
    """Configuration for the persistent store backing the ledger."""

    backend: str = field(default_factory=lambda: os.getenv("LEDGER_STORE_BACKEND", "memory"))
    sqlite_path: str = field(default_factory=lambda: os.getenv("LEDGER_SQLITE_PATH", "ledger.db"))
    sqlite_timeout: float = field(default_factory=lambda: float(os.getenv("LEDGER_SQLITE_TIMEOUT", "5.0")))


@dataclass
class LedgerConfig:
    """Configuration for audit ledger appends and verification."""

    max_append_retries: int = field(default_factory=lambda: int(os.getenv("LEDGER_MAX_APPEND_RETRIES", "5")))
    verify_full: bool = field(default_factory=lambda: _env_bool("LEDGER_VERIFY_FULL", "true"))


@dataclass
class WorkflowConfig:
    """Configuration for workflow execution."""

    # None means unbounded
    step_timeout_seconds: Optional[float] = field(
        default_factory=lambda: _env_optional_float("WORKFLOW_STEP_TIMEOUT")
    )
    run_timeout_seconds: Optional[float] = field(
        default_factory=lambda: _env_optional_float("WORKFLOW_RUN_TIMEOUT")
    )

    audit_steps: bool = field(default_factory=lambda: _env_bool("WORKFLOW_AUDIT_STEPS", "false"))
    definitions_path: Optional[str] = field(default_factory=lambda: os.getenv("WORKFLOW_DEFINITIONS_PATH"))
    max_history: int = field(default_factory=lambda: int(os.getenv("WORKFLOW_MAX_HISTORY", "100")))


@dataclass
class CacheConfig:
    """Configuration for the prediction cache."""

    default_ttl_seconds: float = field(default_factory=lambda: float(os.getenv("CACHE_DEFAULT_TTL", "900")))


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator."""

    default_tenant_id: str = field(default_factory=lambda: os.getenv("DEFAULT_TENANT_ID", "default"))
    maintenance_interval_minutes: int = field(
        default_factory=lambda: int(os.getenv("MAINTENANCE_INTERVAL_MINUTES", "15"))
    )


@dataclass
class CoreConfig:
    """Main configuration container."""

    store: StoreConfig = field(default_factory=StoreConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)

    log_level: str = field(default_factory=lambda: os.getenv("LEDGER_LOG_LEVEL", "INFO"))


# Global config instance
config = CoreConfig()


def configure_logging(level: Optional[str] = None):
    """Configure root logging for the command-line tools."""
    logging.basicConfig(
        level=getattr(logging, (level or config.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
