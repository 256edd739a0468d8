"""Service configuration models.

Models for the sections of config/service.yaml.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class ServiceInfo(BaseModel):
    """Identity stamped into published event metadata."""

    name: str = Field(default="subscription-service", description="Service name")
    version: str = Field(default="1.0", description="Event schema version")


class PubSubSettings(BaseModel):
    """Pub/Sub configuration."""

    project_id: str = Field(..., description="GCP project ID")
    exchange: str = Field(default="membership.events", description="Logical exchange name carried on events")
    consumer_prefix: str = Field(
        default="subscription-service",
        description="Prefix for the Pub/Sub subscriptions this service consumes from",
    )
    prefetch: int = Field(default=10, ge=1, description="Maximum in-flight messages per subscription")
    publish_timeout_seconds: float = Field(default=5.0, gt=0, description="Wait for publish acknowledgement")


class EventSettings(BaseModel):
    """Event consumption and publishing switches."""

    enabled: bool = Field(default=True, description="Connect to Pub/Sub on startup")


class AuthSettings(BaseModel):
    """Bearer token verification settings."""

    token_secret: Optional[str] = Field(
        default=None, description="HS256 secret; normally supplied through ACCESS_TOKEN_SECRET"
    )
    algorithm: str = Field(default="HS256", description="JWT signing algorithm")


class OutboxSettings(BaseModel):
    """Background dispatcher settings for pending notifications."""

    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Delay between dispatcher passes")
    max_attempts: int = Field(default=10, ge=1, description="Publish attempts before a message is marked failed")
    retention_seconds: float = Field(
        default=86400.0, gt=0, description="How long dispatched and failed messages are kept"
    )


class StorageSettings(BaseModel):
    """Record store backend."""

    backend: Literal["memory", "mongo"] = Field(default="mongo", description="Where records are kept")
    mongo_uri: str = Field(default="mongodb://localhost:27017", description="MongoDB connection string")
    database: str = Field(default="membership", description="MongoDB database name")
    server_selection_timeout_ms: int = Field(default=5000, ge=1, description="Fail fast when MongoDB is down")


class ServiceSettings(BaseModel):
    """Complete service.yaml configuration."""

    service: ServiceInfo = Field(default_factory=ServiceInfo)
    pubsub: PubSubSettings
    events: EventSettings = Field(default_factory=EventSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    outbox: OutboxSettings = Field(default_factory=OutboxSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    class Config:
        json_schema_extra = {
            "example": {
                "service": {"name": "subscription-service", "version": "1.0"},
                "pubsub": {
                    "project_id": "membership-local",
                    "exchange": "membership.events",
                    "consumer_prefix": "subscription-service",
                    "prefetch": 10,
                },
                "events": {"enabled": True},
                "auth": {"algorithm": "HS256"},
                "outbox": {"poll_interval_seconds": 5.0, "max_attempts": 10},
                "storage": {"backend": "mongo", "mongo_uri": "mongodb://localhost:27017"},
            }
        }
