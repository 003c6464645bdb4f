"""Component factory for building the reconcile engine from configuration."""

from typing import Dict

import structlog

from labelsync.audit.logger import AuditLogger
from labelsync.clients.base import ProviderAdapter
from labelsync.clients.credentials import StaticCredentialSource
from labelsync.clients.gmail import GmailAdapter
from labelsync.clients.outlook import OutlookAdapter
from labelsync.config.models import LabelsyncConfig
from labelsync.core.models import Provider
from labelsync.core.reconciler import Reconciler
from labelsync.core.store import InMemoryLabelStore, JsonLabelStore, LabelStore
from labelsync.templates.catalog import TemplateCatalog
from labelsync.templates.resolver import TemplateResolver

logger = structlog.get_logger(__name__)

ADAPTER_TYPES = {
    Provider.GMAIL: GmailAdapter,
    Provider.OUTLOOK: OutlookAdapter,
}


class ComponentFactory:
    """Factory for creating reconcile components."""

    @staticmethod
    def create_adapters(config: LabelsyncConfig) -> Dict[Provider, ProviderAdapter]:
        """One adapter per enabled provider."""
        adapters: Dict[Provider, ProviderAdapter] = {}
        for provider, adapter_type in ADAPTER_TYPES.items():
            provider_config = config.providers.get(provider)
            if not provider_config.enabled:
                continue
            kwargs = {
                "timeout_seconds": provider_config.timeout_seconds,
                "rate_limit_per_minute": provider_config.rate_limit_per_minute,
            }
            if provider_config.base_url:
                kwargs["base_url"] = provider_config.base_url
            adapters[provider] = adapter_type(**kwargs)
            logger.debug("Created provider adapter", provider=provider.value)
        return adapters

    @staticmethod
    def create_credentials(config: LabelsyncConfig) -> StaticCredentialSource:
        source = StaticCredentialSource()
        for tenant in config.tenants:
            for provider, token in tenant.credentials.items():
                source.set_token(tenant.tenant_id, provider, token)
        return source

    @staticmethod
    def create_store(config: LabelsyncConfig) -> LabelStore:
        if config.store.backend == "memory":
            return InMemoryLabelStore()
        return JsonLabelStore(state_dir=config.store.state_directory)

    @staticmethod
    def create_resolver(config: LabelsyncConfig) -> TemplateResolver:
        return TemplateResolver(TemplateCatalog(config.template_directory))

    @staticmethod
    def create_audit_logger(config: LabelsyncConfig) -> AuditLogger | None:
        if not config.audit.enabled:
            return None
        return AuditLogger(
            audit_dir=config.audit.audit_directory,
            retention_days=config.audit.retention_days,
        )

    @staticmethod
    def create_reconciler(config: LabelsyncConfig) -> Reconciler:
        """Wire store, credentials, adapters and audit trail into a reconciler."""
        return Reconciler(
            store=ComponentFactory.create_store(config),
            credentials=ComponentFactory.create_credentials(config),
            adapters=ComponentFactory.create_adapters(config),
            resolver=ComponentFactory.create_resolver(config),
            audit_logger=ComponentFactory.create_audit_logger(config),
            options=config.reconcile.to_options(),
        )
