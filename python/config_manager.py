"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List, Tuple

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "verifly"
    password: str = "verifly"
    name: str = "verifly"


@dataclass
class VerificationConfig:
    """Run coordination settings"""
    provider_timeout_seconds: float = 30.0
    max_concurrent_source_calls: int = 8
    # a source call that waits longer than this for a slot fails its run
    source_queue_timeout_seconds: float = 120.0
    worker_pool_size: int = 4
    required_document_types: List[str] = field(default_factory=lambda: ['passport'])
    # in_progress runs older than this are failed on startup recovery
    stale_run_minutes: int = 60


@dataclass
class ScoringConfig:
    """Default point values; policy rules may override them"""
    sanctions_points: float = 70
    potential_sanctions_points: float = 30
    pep_points: float = 40
    potential_pep_points: float = 20
    document_failed_points: float = 25
    low_document_confidence_points: float = 15
    high_confidence_threshold: float = 80
    min_document_confidence: float = 70


@dataclass
class PolicyConfig:
    """Policy used when no stored policy is in effect"""
    name: str = "Default Global Policy"
    version: str = "1.0.0"
    thresholds: Dict[str, Dict[str, float]] = field(default_factory=lambda: {
        'clear': {'max': 30},
        'review': {'min': 30, 'max': 59},
        'not_clear': {'min': 60}
    })


@dataclass
class NotificationConfig:
    """Notification retry settings"""
    retry_delays_seconds: List[int] = field(default_factory=lambda: [300, 1800, 7200])
    max_retries: int = 3
    poll_interval_seconds: float = 5.0


@dataclass
class CollaboratorsConfig:
    """Endpoints of the services the engine consumes"""
    application_service_url: str = ""
    notification_service_url: str = ""
    request_timeout_seconds: float = 10.0


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/verification.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "1.0.0"
    name: str = "Levenshtein Name Similarity"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


def parse_thresholds(thresholds: Optional[Dict[str, Any]]) -> Tuple[float, float, float, float]:
    """(clear.max, review.min, review.max, not_clear.min) with documented defaults

    A missing clear.max closes up to review.min; a missing review.max runs
    up to not_clear.min.
    """
    thresholds = thresholds or {}
    review_min = float((thresholds.get('review') or {}).get('min', 30))
    not_clear_min = float((thresholds.get('not_clear') or {}).get('min', 60))
    clear_max = float((thresholds.get('clear') or {}).get('max', review_min))
    review_max = float((thresholds.get('review') or {}).get('max', not_clear_min))
    return clear_max, review_min, review_max, not_clear_min


def threshold_problems(clear_max: float, review_min: float, review_max: float,
                       not_clear_min: float) -> List[str]:
    """Check that the decision bands cover every score without a gap

    Scores below review.min are clear, so clear.max must reach review.min.
    """
    problems = []
    if clear_max < review_min:
        problems.append(f"clear.max ({clear_max}) is below review.min ({review_min}), leaving scores undecided")
    if review_min > review_max:
        problems.append(f"review.min ({review_min}) exceeds review.max ({review_max})")
    if review_min > not_clear_min:
        problems.append(f"review.min ({review_min}) exceeds not_clear.min ({not_clear_min})")
    return problems


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
        self.verification: VerificationConfig = VerificationConfig()
        self.scoring: ScoringConfig = ScoringConfig()
        self.policy: PolicyConfig = PolicyConfig()
        self.notifications: NotificationConfig = NotificationConfig()
        self.collaborators: CollaboratorsConfig = CollaboratorsConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()

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
        self._parse_verification()
        self._parse_scoring()
        self._parse_policy()
        self._parse_notifications()
        self._parse_collaborators()
        self._parse_logging()
        self._parse_algorithm()
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

    def _parse_verification(self) -> None:
        """Parse run coordination configuration"""
        cfg = self._raw_config.get('verification', {})
        defaults = VerificationConfig()
        self.verification = VerificationConfig(
            provider_timeout_seconds=float(cfg.get('provider_timeout_seconds', defaults.provider_timeout_seconds)),
            max_concurrent_source_calls=int(cfg.get('max_concurrent_source_calls', defaults.max_concurrent_source_calls)),
            source_queue_timeout_seconds=float(cfg.get('source_queue_timeout_seconds',
                                                       defaults.source_queue_timeout_seconds)),
            worker_pool_size=int(cfg.get('worker_pool_size', defaults.worker_pool_size)),
            required_document_types=cfg.get('required_document_types', defaults.required_document_types),
            stale_run_minutes=int(cfg.get('stale_run_minutes', defaults.stale_run_minutes))
        )

    def _parse_scoring(self) -> None:
        """Parse scoring point values"""
        cfg = self._raw_config.get('scoring', {})
        defaults = ScoringConfig()
        self.scoring = ScoringConfig(**{
            name: float(cfg.get(name, getattr(defaults, name)))
            for name in defaults.__dataclass_fields__
        })

    def _parse_policy(self) -> None:
        """Parse default policy configuration"""
        cfg = self._raw_config.get('policy', {})
        defaults = PolicyConfig()
        self.policy = PolicyConfig(
            name=cfg.get('name', defaults.name),
            version=str(cfg.get('version', defaults.version)),
            thresholds=cfg.get('thresholds', defaults.thresholds)
        )

    def _parse_notifications(self) -> None:
        """Parse notification retry configuration"""
        cfg = self._raw_config.get('notifications', {})
        defaults = NotificationConfig()
        self.notifications = NotificationConfig(
            retry_delays_seconds=[int(d) for d in cfg.get('retry_delays_seconds', defaults.retry_delays_seconds)],
            max_retries=int(cfg.get('max_retries', defaults.max_retries)),
            poll_interval_seconds=float(cfg.get('poll_interval_seconds', defaults.poll_interval_seconds))
        )

    def _parse_collaborators(self) -> None:
        """Parse collaborator service endpoints"""
        cfg = self._raw_config.get('collaborators', {})
        defaults = CollaboratorsConfig()
        self.collaborators = CollaboratorsConfig(
            application_service_url=cfg.get('application_service_url', defaults.application_service_url),
            notification_service_url=cfg.get('notification_service_url', defaults.notification_service_url),
            request_timeout_seconds=float(cfg.get('request_timeout_seconds', defaults.request_timeout_seconds))
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/verification.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._raw_config.get('algorithm', {})
        self.algorithm = AlgorithmConfig(
            version=str(cfg.get('version', '1.0.0')),
            name=cfg.get('name', 'Levenshtein Name Similarity')
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

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (password omitted)"""
        return {
            'verification': {
                'provider_timeout_seconds': self.verification.provider_timeout_seconds,
                'max_concurrent_source_calls': self.verification.max_concurrent_source_calls,
                'source_queue_timeout_seconds': self.verification.source_queue_timeout_seconds,
                'worker_pool_size': self.verification.worker_pool_size,
                'required_document_types': self.verification.required_document_types,
                'stale_run_minutes': self.verification.stale_run_minutes
            },
            'scoring': dict(vars(self.scoring)),
            'policy': {
                'name': self.policy.name,
                'version': self.policy.version,
                'thresholds': self.policy.thresholds
            },
            'notifications': {
                'retry_delays_seconds': self.notifications.retry_delays_seconds,
                'max_retries': self.notifications.max_retries,
                'poll_interval_seconds': self.notifications.poll_interval_seconds
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []
        verification = self.verification
        if verification.provider_timeout_seconds <= 0:
            errors.append("verification.provider_timeout_seconds must be positive")
        if verification.max_concurrent_source_calls < 1:
            errors.append("verification.max_concurrent_source_calls must be at least 1")
        if verification.source_queue_timeout_seconds <= 0:
            errors.append("verification.source_queue_timeout_seconds must be positive")
        if verification.worker_pool_size < 1:
            errors.append("verification.worker_pool_size must be at least 1")

        thresholds = self.policy.thresholds
        try:
            float(thresholds['review']['min'])
            float(thresholds['not_clear']['min'])
            bands = parse_thresholds(thresholds)
        except (KeyError, TypeError, ValueError, AttributeError):
            errors.append("policy.thresholds needs review.min and not_clear.min")
        else:
            errors.extend(f"policy.thresholds {problem}" for problem in threshold_problems(*bands))

        if self.notifications.max_retries < 0:
            errors.append("notifications.max_retries must not be negative")
        if not self.notifications.retry_delays_seconds:
            errors.append("notifications.retry_delays_seconds must not be empty")

        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
