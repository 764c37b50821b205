"""
Consent Management
==================
Category registry, regional rules, storage, audit trail, cache and
lifecycle scheduling of per-subject consent.
"""

from .audit_log import AuditLog, AuditQuery
from .cache import CacheLayer, CacheStats
from .compliance import ComplianceIssue, ComplianceMonitor, ComplianceReport
from .engine import ConsentEngine, build_engine
from .lifecycle import LifecycleManager
from .persistence import ConsentDB
from .regional import RegionalComplianceResolver
from .registry import NECESSARY, CategoryRegistry
from .store import ConsentStore

__all__ = [
    "NECESSARY",
    "AuditLog",
    "AuditQuery",
    "CacheLayer",
    "CacheStats",
    "CategoryRegistry",
    "ComplianceIssue",
    "ComplianceMonitor",
    "ComplianceReport",
    "ConsentDB",
    "ConsentEngine",
    "ConsentStore",
    "LifecycleManager",
    "RegionalComplianceResolver",
    "build_engine",
]
