"""
Database Package for the Verifly Verification Engine

This package provides:
- SQLAlchemy ORM models for runs, hits, policies, audit and scheduled tasks
- Session provider with scoped transactions
- Repository pattern for data access (including the Source Hit Store)
- Performance monitoring and query timing
"""

from database.models import (
    Base,
    VerificationRun,
    SourceHit,
    Policy,
    AuditLog,
    ScheduledTask,
    RunStatus,
    Decision,
    MatchType,
    Severity,
    AuditAction,
    TaskStatus,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db_provider,
    create_test_provider,
)
from database.monitoring import (
    query_timer,
    timed_query,
    get_db_metrics,
    get_slow_query_report,
    reset_metrics,
    configure_monitoring,
    check_health,
    HealthStatus,
)

__all__ = [
    'Base',
    # Models
    'VerificationRun',
    'SourceHit',
    'Policy',
    'AuditLog',
    'ScheduledTask',
    # Enums
    'RunStatus',
    'Decision',
    'MatchType',
    'Severity',
    'AuditAction',
    'TaskStatus',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'get_db_provider',
    'create_test_provider',
    # Monitoring
    'query_timer',
    'timed_query',
    'get_db_metrics',
    'get_slow_query_report',
    'reset_metrics',
    'configure_monitoring',
    'check_health',
    'HealthStatus',
]
