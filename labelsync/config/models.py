"""Configuration models for labelsync."""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from labelsync.core.models import Provider, TenantProfile
from labelsync.core.reconciler import ReconcileOptions


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class LogFormat(str, Enum):
    """Log output formats."""
    JSON = "json"
    TEXT = "text"


class ProviderConfig(BaseModel):
    """Mailbox provider API configuration."""

    enabled: bool = Field(
        True,
        description="Whether this provider is available for reconcile runs"
    )
    base_url: str | None = Field(
        None,
        description="Override for the provider API base URL"
    )
    rate_limit_per_minute: int = Field(
        600,
        description="Rate limit for provider API calls per minute",
        ge=1
    )
    timeout_seconds: int = Field(
        30,
        description="Timeout for provider API calls in seconds",
        ge=1
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str | None) -> str | None:
        """Require HTTPS for provider endpoints."""
        if v is not None and not v.startswith("https://"):
            raise ValueError("Provider base_url must use https://")
        return v.rstrip("/") if v else v


class ProvidersConfig(BaseModel):
    """Per-provider API settings."""

    gmail: ProviderConfig = Field(default_factory=ProviderConfig)
    outlook: ProviderConfig = Field(default_factory=ProviderConfig)

    def get(self, provider: Provider) -> ProviderConfig:
        return getattr(self, Provider(provider).value)


class ReconcileConfig(BaseModel):
    """Reconcile run settings."""

    max_concurrency: int = Field(
        4,
        description="Maximum concurrent label creations per tenant/provider",
        ge=1
    )
    max_attempts: int = Field(
        3,
        description="Maximum calls per label for transient errors",
        ge=1
    )
    retry_delay_seconds: float = Field(
        1.0,
        description="Initial delay between retries in seconds",
        ge=0
    )
    max_retry_delay_seconds: float = Field(
        30.0,
        description="Upper bound for a single retry delay in seconds",
        ge=0
    )
    run_timeout_seconds: float | None = Field(
        None,
        description="Wall-clock budget for one reconcile run",
        gt=0
    )

    def to_options(self) -> ReconcileOptions:
        return ReconcileOptions(
            max_concurrency=self.max_concurrency,
            max_attempts=self.max_attempts,
            backoff_seconds=self.retry_delay_seconds,
            max_backoff_seconds=self.max_retry_delay_seconds,
            run_timeout_seconds=self.run_timeout_seconds,
        )


class StoreConfig(BaseModel):
    """Label record store configuration."""

    backend: Literal["json", "memory"] = Field(
        "json",
        description="Record store backend"
    )
    state_directory: Path = Field(
        Path("./state"),
        description="Directory to store label records"
    )


class AuditConfig(BaseModel):
    """Audit trail configuration."""

    enabled: bool = Field(
        True,
        description="Whether audit logging is enabled"
    )
    audit_directory: Path = Field(
        Path("./logs/audit"),
        description="Directory for per-run audit files"
    )
    retention_days: int = Field(
        90,
        description="Number of days to retain audit logs",
        ge=1
    )


class LoggingConfig(BaseModel):
    """Application logging configuration."""

    level: LogLevel = Field(
        LogLevel.INFO,
        description="Logging level"
    )
    format: LogFormat = Field(
        LogFormat.TEXT,
        description="Log output format"
    )


class TenantConfig(BaseModel):
    """One tenant's business profile and provider credentials."""

    tenant_id: str = Field(
        ...,
        description="Stable tenant identifier",
        min_length=1
    )
    vertical: str = Field(
        ...,
        description="Business vertical or alias (e.g. 'HVAC', 'Plumber')",
        min_length=1
    )
    team_members: List[str] = Field(
        default_factory=list,
        description="Ordered team member names for manager labels"
    )
    vendors: List[str] = Field(
        default_factory=list,
        description="Ordered vendor names for supplier labels"
    )
    providers: List[Provider] = Field(
        default_factory=lambda: [Provider.GMAIL],
        description="Providers to reconcile for this tenant"
    )
    credentials: Dict[Provider, SecretStr] = Field(
        default_factory=dict,
        description="Bearer access tokens keyed by provider"
    )

    @model_validator(mode="after")
    def validate_credentials(self) -> "TenantConfig":
        """Every reconciled provider needs a credential."""
        missing = [p.value for p in self.providers if p not in self.credentials]
        if missing:
            raise ValueError(f"Tenant {self.tenant_id} has no credentials for: {', '.join(missing)}")
        return self

    def to_profile(self) -> TenantProfile:
        return TenantProfile(
            tenant_id=self.tenant_id,
            vertical=self.vertical,
            team_members=self.team_members,
            vendors=self.vendors,
            providers=self.providers,
        )


class LabelsyncConfig(BaseModel):
    """Complete labelsync configuration."""

    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    template_directory: Path | None = Field(
        None,
        description="Directory with base.yaml and verticals/ (defaults to packaged templates)"
    )
    tenants: List[TenantConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_tenants(self) -> "LabelsyncConfig":
        """Tenant ids must be unique and use enabled providers."""
        seen = set()
        for tenant in self.tenants:
            if tenant.tenant_id in seen:
                raise ValueError(f"Duplicate tenant_id: {tenant.tenant_id}")
            seen.add(tenant.tenant_id)
            for provider in tenant.providers:
                if not self.providers.get(provider).enabled:
                    raise ValueError(
                        f"Tenant {tenant.tenant_id} uses disabled provider {provider.value}"
                    )
        return self

    def get_tenant(self, tenant_id: str) -> TenantConfig | None:
        for tenant in self.tenants:
            if tenant.tenant_id == tenant_id:
                return tenant
        return None
