"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic import Field, RedisDsn, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CASS_OPERATOR_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Cassandra Datacenter Operator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production/testing)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Server (health probes and read-only status API)
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")

    # Redis (per-datacenter locks)
    redis_url: RedisDsn = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_max_connections: int = Field(default=20, ge=5, le=100, description="Redis max connections")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    watch_namespace: str = Field(default="default", description="Namespace holding CassandraDatacenter resources")
    k8s_request_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for a single Kubernetes API call"
    )

    # CassandraDatacenter custom resource
    crd_group: str = Field(default="cassandra.datastax.com", description="CRD API group")
    crd_version: str = Field(default="v1beta1", description="CRD API version")
    crd_plural: str = Field(default="cassandradatacenters", description="CRD plural name")

    # Reconciliation
    reconcile_interval: int = Field(default=30, ge=1, le=300, description="Seconds between full reconciliation cycles")
    requeue_short_seconds: float = Field(
        default=2.0, gt=0, description="Requeue delay after a pass that made progress"
    )
    backoff_initial_seconds: float = Field(default=1.0, gt=0, description="First retry delay after a transient failure")
    backoff_max_seconds: float = Field(default=60.0, gt=0, description="Upper bound of the retry delay")
    lock_timeout_seconds: int = Field(default=120, ge=10, description="Datacenter lock expiry")

    # Management API
    management_api_port: int = Field(default=8080, ge=1, le=65535, description="Management API port on each node")
    management_api_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for a single management API call"
    )
    node_start_retry_budget: int = Field(
        default=10, ge=1, description="Unreachable start attempts before a node is routed to replacement"
    )

    # Monitoring
    prometheus_enabled: bool = Field(default=True, description="Enable Prometheus metrics")

    # Sentry
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @model_validator(mode="after")
    def validate_schedule(self) -> "Settings":
        """Backoff must be able to grow and locks must outlive a pass."""
        if self.backoff_max_seconds < self.backoff_initial_seconds:
            raise ValueError("backoff_max_seconds must not be below backoff_initial_seconds")
        if self.lock_timeout_seconds <= self.k8s_request_timeout_seconds:
            raise ValueError("lock_timeout_seconds must exceed k8s_request_timeout_seconds")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
