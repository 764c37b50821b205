"""
Consent Engine Assembly
=======================
Builds one wired set of consent components from configuration.

There is no module-level engine: the host application calls
:func:`build_engine` once at startup and passes the returned
:class:`ConsentEngine` to whatever handles requests.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from config.config_loader import get_engine_config
from core.exceptions import ConfigurationError, ValidationError
from core.interfaces import DataDeleter, RegionLocator, RenewalNotifier
from core.models import RetryPolicy, WebhookSubscription
from core.utils import merge_configs, setup_logging, utcnow
from consent.audit_log import AuditLog
from consent.cache import CacheLayer
from consent.compliance import ComplianceMonitor
from consent.lifecycle import LifecycleManager
from consent.persistence import ConsentDB
from consent.regional import RegionalComplianceResolver
from consent.registry import CategoryRegistry
from consent.store import ConsentStore
from propagation.event_bus import EventBus, FeatureGate
from propagation.webhooks import WebhookDispatcher, WebhookTransport

logger = structlog.get_logger(__name__)


@dataclass
class ConsentEngine:
    """The wired components of one consent engine instance."""

    config: Dict[str, Any]
    db: ConsentDB
    registry: CategoryRegistry
    resolver: RegionalComplianceResolver
    audit_log: AuditLog
    store: ConsentStore
    cache: CacheLayer
    event_bus: EventBus
    dispatcher: WebhookDispatcher
    lifecycle: LifecycleManager
    feature_gate: FeatureGate
    compliance: ComplianceMonitor

    async def start(self) -> None:
        """Start background webhook delivery and lifecycle sweeps."""
        await self.dispatcher.start()
        await self.lifecycle.start()

    async def stop(self) -> None:
        await self.lifecycle.stop()
        await self.dispatcher.stop()

    def close(self) -> None:
        self.dispatcher.shutdown()
        self.db.close()


def build_engine(
    config: Optional[Dict[str, Any]] = None,
    db_path: Optional[str] = None,
    region_locator: Optional[RegionLocator] = None,
    deleter: Optional[DataDeleter] = None,
    notifier: Optional[RenewalNotifier] = None,
    transport: Optional[WebhookTransport] = None,
    clock: Callable[[], datetime] = utcnow,
    configure_logging: bool = False,
) -> ConsentEngine:
    """
    Construct and wire every component.

    Args:
        config: Overrides merged on top of the loaded configuration.
        db_path: SQLite path (':memory:' for tests); overrides storage.db_path.
        region_locator: Geolocation collaborator.
        deleter: Data deletion collaborator. Without one, deletion jobs
            are kept pending instead of being marked completed.
        notifier: Renewal reminder collaborator.
        transport: Webhook transport (requests-based by default).
        clock: Source of the current time for every component.
        configure_logging: Apply the logging section to structlog first.

    Returns:
        The assembled engine.

    Raises:
        ConfigurationError: If categories, regions or subscriptions are invalid.
    """
    cfg = merge_configs(get_engine_config(), config or {})
    if configure_logging:
        log_cfg = cfg["logging"]
        setup_logging(log_cfg["level"], log_cfg["format"], log_cfg.get("file"))
    storage = cfg["storage"]
    privacy = cfg["privacy"]
    webhooks = cfg["webhooks"]
    hash_salt = privacy.get("hash_salt") or ""

    registry = CategoryRegistry()
    try:
        registry.load_from_config(cfg.get("categories", []))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid category configuration: {e}", "categories") from e

    resolver = RegionalComplianceResolver(registry)
    resolver.load_from_config(cfg.get("regions", {}))

    db = ConsentDB(db_path or storage["db_path"], busy_timeout=storage.get("busy_timeout", 5.0))
    audit_log = AuditLog(db, hash_salt=hash_salt)

    dispatcher = WebhookDispatcher(
        db=db,
        transport=transport,
        hash_salt=hash_salt,
        max_workers=webhooks.get("max_workers", 8),
        poll_interval=webhooks.get("poll_interval", 1.0),
        clock=clock,
    )
    default_retry = RetryPolicy(**webhooks.get("retry", {}))
    for entry in cfg.get("subscriptions", []) or []:
        entry = dict(entry)
        entry.setdefault("retry_policy", default_retry)
        entry.setdefault("timeout_seconds", webhooks.get("timeout_seconds", 5.0))
        try:
            dispatcher.subscribe(WebhookSubscription(**entry))
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid subscription {entry.get('service_id')!r}: {e}", "subscriptions"
            ) from e

    event_bus = EventBus(dispatcher)
    store = ConsentStore(
        db,
        registry,
        resolver,
        audit_log,
        event_bus=event_bus,
        region_locator=region_locator,
        default_region=cfg["lifecycle"].get("default_region"),
        hash_salt=hash_salt,
        clock=clock,
    )
    cache = CacheLayer(
        store,
        resolver=resolver,
        ttl_seconds=cfg["cache"]["ttl_seconds"],
        max_size=cfg["cache"]["max_size"],
        clock=clock,
    )
    lifecycle = LifecycleManager(
        db,
        store,
        registry,
        resolver,
        audit_log,
        deleter=deleter,
        notifier=notifier,
        sweep_interval=cfg["lifecycle"]["sweep_interval"],
        clock=clock,
    )
    if deleter is None:
        logger.warning("No data deleter configured; deletion jobs will stay pending")
    feature_gate = FeatureGate(registry, cache)
    event_bus.subscribe(lifecycle)
    event_bus.subscribe(feature_gate)

    compliance = ComplianceMonitor(db, audit_log, resolver, clock=clock)

    logger.info(
        "Consent engine built",
        categories=len(registry),
        regions=resolver.known_regions(),
        subscriptions=len(dispatcher.subscriptions()),
        db_path=str(db.db_path),
    )
    return ConsentEngine(
        config=cfg,
        db=db,
        registry=registry,
        resolver=resolver,
        audit_log=audit_log,
        store=store,
        cache=cache,
        event_bus=event_bus,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        feature_gate=feature_gate,
        compliance=compliance,
    )
