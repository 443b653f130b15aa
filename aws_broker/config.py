"""Application configuration module."""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RabbitMQConfig(BaseModel):
    """Configuration options for RabbitMQ connections."""

    url: str = Field(..., description="AMQP URL for the RabbitMQ broker")
    exchange: str = Field("broker.events", description="Exchange that receives audit events")


class RedisConfig(BaseModel):
    """Configuration for the Redis connection used for instance records."""

    url: str = Field("redis://localhost:6379/0", description="Redis connection URL")
    decode_responses: bool = Field(True, description="Decode responses to str instead of bytes")
    key_prefix: str = Field("aws-broker", description="Prefix for every key written by the record store")


class ProviderConfig(BaseModel):
    """AWS provider call configuration."""

    enabled: bool = Field(
        True,
        description="When false every provider call is skipped and succeeds. Useful for local development.",
    )
    timeout_seconds: float = Field(
        30.0, gt=0, description="Upper bound for a single provider call made on behalf of a request"
    )
    max_workers: int = Field(8, ge=1, le=64, description="Worker threads available for provider calls")
    claim_ttl_seconds: float = Field(
        900.0,
        gt=0,
        description="Age after which an operation claim left by a dead process no longer blocks the instance",
    )
    connect_timeout: int = Field(5, ge=1, description="botocore connect timeout in seconds")
    read_timeout: int = Field(20, ge=1, description="botocore read timeout in seconds")
    max_attempts: int = Field(3, ge=1, le=10, description="botocore retry attempts")
    db_prefix: str = Field("cg-aws-broker", description="Prefix for provider resource identifiers")
    db_subnet_group: Optional[str] = Field(None, description="RDS DB subnet group for dedicated instances")
    cache_subnet_group: Optional[str] = Field(None, description="ElastiCache subnet group")
    security_groups: List[str] = Field(default_factory=list, description="VPC security group ids")
    functions_parameter_group: Optional[str] = Field(
        None,
        description="RDS parameter group applied to dedicated MySQL instances that enable functions",
    )

    @field_validator("db_prefix")
    def _normalize_db_prefix(cls, value: str) -> str:
        return value.replace(" ", "-").replace("_", "-").lower()


class PlatformConfig(BaseModel):
    """Cloud Controller access used to confirm platform ownership of instances."""

    api_url: Optional[str] = Field(None, description="Cloud Controller API base URL")
    uaa_url: Optional[str] = Field(None, description="UAA base URL for client-credentials tokens")
    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None
    timeout_seconds: float = Field(10.0, gt=0)


class ReconcileConfig(BaseModel):
    """Repair policy for the reconciliation sweep."""

    mark_stale_records_failed: bool = Field(
        False,
        description="Set records whose provider resource vanished to provisioning-failed",
    )
    remove_abandoned_records: bool = Field(
        False,
        description="Remove records whose provider resource and platform ownership are both gone",
    )
    managed_tag_key: str = Field("broker", description="Tag key marking broker-managed provider resources")
    managed_tag_value: str = Field("AWS broker", description="Tag value marking broker-managed provider resources")


class LoggingConfig(BaseModel):
    """Simple logging configuration."""

    level: str = Field("INFO", description="Application log level")


class AppConfig(BaseSettings):
    """Top-level application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="AWSB_", env_nested_delimiter="__", case_sensitive=False
    )

    environment: str = Field("development", description="Deployment environment name")
    region: str = Field("us-gov-west-1", description="AWS region for provider calls")
    encryption_key: SecretStr = Field(..., description="Process-wide key protecting instance passwords")
    redis: RedisConfig = Field(default_factory=RedisConfig)
    rabbitmq: Optional[RabbitMQConfig] = None
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    shared_pools: Dict[str, str] = Field(
        default_factory=dict,
        description="Shared pool name to SQLAlchemy URL of the long-lived shared database server",
    )
    catalog_file: str = Field("catalog.json", description="Path of the JSON service catalog")
    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api_prefix: str = Field("/v2", description="Base prefix for broker routes")
    service_name: str = Field("aws-broker", description="Service identifier")

    @field_validator("encryption_key")
    def _check_encryption_key(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < 16:
            raise ValueError("encryption_key must be at least 16 characters")
        return value

    @field_validator("environment")
    def _normalize_environment(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_test_environment(self) -> bool:
        return self.environment == "test"


@lru_cache
def get_settings() -> AppConfig:
    """Return a cached instance of the application settings."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "RabbitMQConfig",
    "RedisConfig",
    "ProviderConfig",
    "PlatformConfig",
    "ReconcileConfig",
    "LoggingConfig",
    "get_settings",
]
