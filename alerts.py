from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import get_settings
from errors import AggregationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BudgetAlertMessage:
    budget_id: int
    user_id: int
    year: int
    month: int
    level: str  # "warning" | "exceeded"
    percentage: int
    used_cents: int
    remaining_cents: int
    amount_cents: int
    category_id: Optional[int]


class AlertChannel(Protocol):
    def send(self, message: BudgetAlertMessage) -> None: ...


class LoggingAlertChannel:
    def send(self, message: BudgetAlertMessage) -> None:
        logger.info(
            f"budget_alert: budget_id={message.budget_id} level={message.level} "
            f"percentage={message.percentage} period={message.year:04d}-{message.month:02d}"
        )


class WebhookAlertChannel:
    def __init__(self, url: str, *, timeout: float) -> None:
        self.url = url
        self.timeout = timeout

    def send(self, message: BudgetAlertMessage) -> None:
        body = json.dumps({"type": "budget_alert", **asdict(message)}).encode("utf-8")
        req = Request(
            self.url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                resp.read()
        except (URLError, TimeoutError) as exc:
            raise AggregationError(
                f"Failed to deliver budget alert for budget {message.budget_id}"
            ) from exc


def get_alert_channel() -> AlertChannel:
    settings = get_settings()
    if settings.alert_webhook_url:
        return WebhookAlertChannel(
            settings.alert_webhook_url, timeout=settings.alert_timeout_secs
        )
    return LoggingAlertChannel()
