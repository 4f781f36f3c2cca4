# Board store configuration
# Override via a YAML file (BOARDSTORE_CONFIG) and BOARDSTORE_DB.

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .errors import ConfigError
from .schema import DEFAULT_BOARD_TITLES

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent / "config.yaml"
CONFIG_ENV = "BOARDSTORE_CONFIG"
DB_ENV = "BOARDSTORE_DB"


def _default_context_boards() -> Dict[str, List[str]]:
    return {
        "civil": ["Planejamento", "Em Execução", "Revisão", "Concluído"],
        "eletromecanica": ["Análise", "Desenvolvimento", "Testes", "Implementado"],
        "spcs": ["Backlog", "Em Progresso", "Validação", "Finalizado"],
    }


@dataclass
class Settings:
    """Runtime configuration for the board store."""

    # Storage
    db_path: str = "~/.local/share/boardstore/boards.db"

    # Retry / circuit breaker
    max_retries: int = 3
    retry_base_delay: float = 1.0      # seconds, doubled per attempt
    circuit_failure_threshold: int = 5
    circuit_timeout: float = 30.0      # seconds the circuit stays open

    # Backups
    backup_retention_days: int = 30

    # Debounce / throttle
    debounce_ms: int = 300
    throttle_ms: int = 1000

    # Boards created for a new context
    default_boards: List[str] = field(default_factory=lambda: list(DEFAULT_BOARD_TITLES))
    context_boards: Dict[str, List[str]] = field(default_factory=_default_context_boards)

    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in the database path."""
        self.db_path = str(Path(self.db_path).expanduser())

    def check(self):
        """Raise ConfigError for values the store cannot run with."""
        problems = []
        if self.max_retries < 0:
            problems.append(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay < 0:
            problems.append(f"retry_base_delay must be >= 0, got {self.retry_base_delay}")
        if self.circuit_failure_threshold < 1:
            problems.append(f"circuit_failure_threshold must be >= 1, got {self.circuit_failure_threshold}")
        if self.circuit_timeout < 0:
            problems.append(f"circuit_timeout must be >= 0, got {self.circuit_timeout}")
        if self.backup_retention_days < 0:
            problems.append(f"backup_retention_days must be >= 0, got {self.backup_retention_days}")
        if self.debounce_ms < 0 or self.throttle_ms < 0:
            problems.append("debounce_ms and throttle_ms must be >= 0")
        if not [t for t in self.default_boards if str(t).strip()]:
            problems.append("default_boards must name at least one board")
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            problems.append(f"Unknown log_level '{self.log_level}'")
        if problems:
            raise ConfigError("; ".join(problems))

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Settings":
        """
        Load settings from YAML, falling back to defaults.

        The file is `path`, else $BOARDSTORE_CONFIG, else config.yaml next to
        this module. A missing file means defaults; an unreadable one raises
        ConfigError. $BOARDSTORE_DB overrides db_path.
        """
        cfg_path = Path(path or os.environ.get(CONFIG_ENV) or CONFIG_PATH).expanduser()
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read config {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config {cfg_path} must be a mapping, got {type(data).__name__}")
            known = {f.name for f in fields(cls)}
            unknown = sorted(str(k) for k in data if k not in known)
            if unknown:
                logger.warning(f"Ignoring unknown config keys in {cfg_path}: {', '.join(unknown)}")
            try:
                cfg = cls(**{k: v for k, v in data.items() if k in known})
            except TypeError as e:
                raise ConfigError(f"Invalid config {cfg_path}: {e}") from e
            logger.debug(f"Loaded config from {cfg_path}")
        else:
            cfg = cls()

        db_override = os.environ.get(DB_ENV)
        if db_override:
            cfg.db_path = db_override

        cfg.resolve_paths()
        try:
            cfg.check()
        except TypeError as e:
            raise ConfigError(f"Invalid config value: {e}") from e
        return cfg
