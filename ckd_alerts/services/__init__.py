from .audit import AuditLogger, AuditEntry, AuditAction, AuditException
from .alert_engine_config import AlertEngineConfig, ConfigManager, ConfigValidator, ConfigurationError
from .alert_metrics import AlertEngineMetrics
from .alert_store import InMemoryAlertStore, NotificationLogStore
from .rule_catalog import RuleCatalog, RuleTrigger, WeightGainRule, ThresholdRule
from .alert_evaluator import AlertEvaluator, EvaluationResult, SuppressedTrigger
from .alert_lifecycle import AlertLifecycleService, TransitionResult
from .preferences import NotificationPreferenceResolver, InMemoryPreferenceStore, PreferenceDecision
from .email_transport import (
    EmailTransport, ConsoleEmailTransport, SmtpEmailTransport, RecordingEmailTransport, SendResult
)
from .notification_dispatcher import NotificationDispatcher, NotificationQueue
from .escalation_engine import EscalationScheduler, EscalationPolicy, EscalationTickResult
from .alert_engine import AlertEngine

__all__ = [
    'AuditLogger',
    'AuditEntry',
    'AuditAction',
    'AuditException',
    'AlertEngineConfig',
    'ConfigManager',
    'ConfigValidator',
    'ConfigurationError',
    'AlertEngineMetrics',
    'InMemoryAlertStore',
    'NotificationLogStore',
    'RuleCatalog',
    'RuleTrigger',
    'WeightGainRule',
    'ThresholdRule',
    'AlertEvaluator',
    'EvaluationResult',
    'SuppressedTrigger',
    'AlertLifecycleService',
    'TransitionResult',
    'NotificationPreferenceResolver',
    'InMemoryPreferenceStore',
    'PreferenceDecision',
    'EmailTransport',
    'ConsoleEmailTransport',
    'SmtpEmailTransport',
    'RecordingEmailTransport',
    'SendResult',
    'NotificationDispatcher',
    'NotificationQueue',
    'EscalationScheduler',
    'EscalationPolicy',
    'EscalationTickResult',
    'AlertEngine'
]
