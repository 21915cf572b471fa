"""
Outbound billing notifications.

The billing core only decides *what* to send (dunning template, recipient,
grace deadline, update link); delivery belongs to a Notifier implementation.
Delivery is fire-and-forget: a failing notifier is logged and never fails the
webhook that triggered it.
"""

import logging
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel

from billing_core.models.billing import DunningTemplate

logger = logging.getLogger(__name__)


DUNNING_SUBJECTS: dict[DunningTemplate, str] = {
    DunningTemplate.FIRST: "Action Required: Payment failed",
    DunningTemplate.SECOND: "Reminder: Please update your payment method",
    DunningTemplate.FINAL: "Final notice: Your access will be paused soon",
}

DUNNING_BODIES: dict[DunningTemplate, str] = {
    DunningTemplate.FIRST: (
        "Hi {user_name},\n\n"
        "We weren't able to process your payment.\n"
        "Your account is still active and we'll retry the payment automatically.\n"
        "To avoid any interruption, please update your payment method: {update_url}\n\n"
        "Your access will remain active until {grace_ends_at}."
    ),
    DunningTemplate.SECOND: (
        "Hi {user_name},\n\n"
        "This is a reminder that your payment is still pending.\n"
        "Your account access will be paused on {grace_ends_at} if we can't process payment.\n"
        "Update your payment method: {update_url}"
    ),
    DunningTemplate.FINAL: (
        "Hi {user_name},\n\n"
        "Your account access will be paused on {grace_ends_at}.\n"
        "We've tried to process your payment several times without success.\n"
        "Please update your payment method now to keep your access: {update_url}\n\n"
        "After your access is paused you can still view your data, "
        "but you won't be able to record new meetings."
    ),
}


class DunningNotice(BaseModel):
    """Payment-failed notice for one organization."""

    template: DunningTemplate
    organization_id: str
    email: str
    user_name: str
    grace_ends_at: datetime
    update_url: str
    retry_count: int

    @property
    def subject(self) -> str:
        return DUNNING_SUBJECTS[self.template]

    def render(self) -> str:
        """Plain-text body."""
        return DUNNING_BODIES[self.template].format(
            user_name=self.user_name,
            grace_ends_at=self.grace_ends_at.strftime("%B %d, %Y"),
            update_url=self.update_url,
        )


class Notifier(Protocol):
    """Delivery channel for billing notices (email, in-app, ...)."""

    async def send_dunning_notice(self, notice: DunningNotice) -> None: ...


class LoggingNotifier:
    """Notifier that only logs; the default until a delivery channel is wired in."""

    async def send_dunning_notice(self, notice: DunningNotice) -> None:
        logger.info(
            "Dunning notice",
            extra={
                "organization_id": notice.organization_id,
                "template": notice.template.value,
                "subject": notice.subject,
                "retry_count": notice.retry_count,
                "grace_ends_at": notice.grace_ends_at.isoformat(),
            },
        )
