"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "creditgate_user"
    password: str = "creditgate_password"
    name: str = "creditgate"


@dataclass
class BureauConfig:
    """Credit bureau data source settings"""
    base_url: str = "http://localhost:3001/api"
    api_key: str = ""
    timeout_seconds: float = 10.0
    fetch_timeout_seconds: float = 30.0
    max_retry_attempts: int = 3


@dataclass
class QuotaConfig:
    """Monthly query quota settings"""
    timezone: str = "America/Mexico_City"
    default_monthly_queries: int = 100


@dataclass
class ConsentConfig:
    """Consent lifecycle settings"""
    # Tolerance applied when checking that a requested start is not in the past
    start_tolerance_seconds: int = 60
    recent_logs_limit: int = 10


@dataclass
class AuditConfig:
    """Audit trail settings"""
    log_quota_exceeded: bool = True


@dataclass
class ScoringConfig:
    """Scoring engine settings"""
    history_limit: int = 12
    max_payments_returned: int = 50
    algorithm_version: str = "1.0.0"
    algorithm_name: str = "Five-Component Credit Score"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/creditgate.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.database: DatabaseConfig = DatabaseConfig()
        self.bureau: BureauConfig = BureauConfig()
        self.quota: QuotaConfig = QuotaConfig()
        self.consent: ConsentConfig = ConsentConfig()
        self.audit: AuditConfig = AuditConfig()
        self.scoring: ScoringConfig = ScoringConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_database()
        self._parse_bureau()
        self._parse_quota()
        self._parse_consent()
        self._parse_audit()
        self._parse_scoring()
        self._parse_logging()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name)
        )

    def _parse_bureau(self) -> None:
        cfg = self._raw_config.get('bureau', {})
        self.bureau = BureauConfig(
            base_url=cfg.get('base_url', self.bureau.base_url).rstrip('/'),
            api_key=cfg.get('api_key', self.bureau.api_key),
            timeout_seconds=float(cfg.get('timeout_seconds', self.bureau.timeout_seconds)),
            fetch_timeout_seconds=float(
                cfg.get('fetch_timeout_seconds', self.bureau.fetch_timeout_seconds)
            ),
            max_retry_attempts=cfg.get('max_retry_attempts', self.bureau.max_retry_attempts)
        )

    def _parse_quota(self) -> None:
        cfg = self._raw_config.get('quota', {})
        self.quota = QuotaConfig(
            timezone=cfg.get('timezone', self.quota.timezone),
            default_monthly_queries=cfg.get(
                'default_monthly_queries', self.quota.default_monthly_queries
            )
        )

    def _parse_consent(self) -> None:
        cfg = self._raw_config.get('consent', {})
        self.consent = ConsentConfig(
            start_tolerance_seconds=cfg.get(
                'start_tolerance_seconds', self.consent.start_tolerance_seconds
            ),
            recent_logs_limit=cfg.get('recent_logs_limit', self.consent.recent_logs_limit)
        )

    def _parse_audit(self) -> None:
        cfg = self._raw_config.get('audit', {})
        self.audit = AuditConfig(
            log_quota_exceeded=cfg.get('log_quota_exceeded', True)
        )

    def _parse_scoring(self) -> None:
        cfg = self._raw_config.get('scoring', {})
        self.scoring = ScoringConfig(
            history_limit=cfg.get('history_limit', 12),
            max_payments_returned=cfg.get('max_payments_returned', 50),
            algorithm_version=cfg.get('algorithm_version', self.scoring.algorithm_version),
            algorithm_name=cfg.get('algorithm_name', self.scoring.algorithm_name)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/creditgate.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def get_timezone(self) -> ZoneInfo:
        """Local reference timezone used for quota periods and consent start dates"""
        return ZoneInfo(self.quota.timezone)

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            },
            'bureau': {
                'base_url': self.bureau.base_url,
                'timeout_seconds': self.bureau.timeout_seconds,
                'fetch_timeout_seconds': self.bureau.fetch_timeout_seconds,
                'max_retry_attempts': self.bureau.max_retry_attempts
            },
            'quota': {
                'timezone': self.quota.timezone,
                'default_monthly_queries': self.quota.default_monthly_queries
            },
            'consent': {
                'start_tolerance_seconds': self.consent.start_tolerance_seconds,
                'recent_logs_limit': self.consent.recent_logs_limit
            },
            'audit': {
                'log_quota_exceeded': self.audit.log_quota_exceeded
            },
            'scoring': {
                'history_limit': self.scoring.history_limit,
                'max_payments_returned': self.scoring.max_payments_returned,
                'algorithm_version': self.scoring.algorithm_version,
                'algorithm_name': self.scoring.algorithm_name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        if self.bureau.timeout_seconds <= 0 or self.bureau.fetch_timeout_seconds <= 0:
            raise ConfigurationError("bureau timeouts must be positive")
        if self.bureau.max_retry_attempts < 1:
            raise ConfigurationError("bureau.max_retry_attempts must be at least 1")
        if self.scoring.history_limit < 1:
            raise ConfigurationError("scoring.history_limit must be at least 1")
        if self.quota.default_monthly_queries < 0:
            raise ConfigurationError("quota.default_monthly_queries cannot be negative")
        try:
            ZoneInfo(self.quota.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown timezone: {self.quota.timezone}")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
