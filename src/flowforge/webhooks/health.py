"""Webhook health evaluation from delivery counters."""
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from flowforge.config import Settings, get_settings


class WebhookStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    WARNING = "warning"
    ERROR = "error"


class WebhookStats(BaseModel):
    """Delivery counters of one webhook."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_active: bool = True
    execution_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error_message: str | None = None

    @property
    def success_rate(self) -> float:
        if self.execution_count == 0:
            return 0.0
        return self.success_count / self.execution_count * 100

    @property
    def error_rate(self) -> float:
        if self.execution_count == 0:
            return 0.0
        return self.error_count / self.execution_count * 100

    def record_success(self, now: datetime | None = None) -> None:
        self.execution_count += 1
        self.success_count += 1
        self.last_success_at = now or datetime.now(timezone.utc)

    def record_error(self, message: str, now: datetime | None = None) -> None:
        self.execution_count += 1
        self.error_count += 1
        self.last_error_at = now or datetime.now(timezone.utc)
        self.last_error_message = message


class WebhookHealth(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: WebhookStatus
    healthy: bool
    success_rate: float
    error_rate: float


def _last_success_is_newer(stats: WebhookStats) -> bool:
    if stats.last_success_at is None:
        return False
    return stats.last_error_at is None or stats.last_success_at > stats.last_error_at


def evaluate_webhook_health(stats: WebhookStats, settings: Settings | None = None) -> WebhookHealth:
    """
    Classify a webhook from its counters.

    A webhook is healthy when its success rate is above the healthy
    threshold and its last success is newer than its last error. Its
    status is error or warning when the error rate is above the matching
    threshold, inactive when it is switched off, active otherwise.

    Args:
        stats: Delivery counters
        settings: Source of the thresholds (defaults to global settings)
    """
    settings = settings or get_settings()
    success_rate = stats.success_rate
    error_rate = stats.error_rate

    if not stats.is_active:
        status = WebhookStatus.INACTIVE
    elif error_rate > settings.webhook_error_rate_error:
        status = WebhookStatus.ERROR
    elif error_rate > settings.webhook_error_rate_warning:
        status = WebhookStatus.WARNING
    else:
        status = WebhookStatus.ACTIVE

    healthy = success_rate > settings.webhook_healthy_success_rate and _last_success_is_newer(stats)
    return WebhookHealth(
        status=status,
        healthy=healthy,
        success_rate=success_rate,
        error_rate=error_rate,
    )
