"""Grant Notification Service: tells agents, renters and admins about grant events.

Dispatch is best effort and runs after the state transition has committed:
a failure here is logged and never propagates, so it cannot roll back the
grant. Each notification is an in-app row per recipient plus, when SendGrid
is configured and an address is known, an e-mail wrapped in asyncio.to_thread.

Agents hear about unlocks, payment failures and rejections. The renter who
owns the request hears when an agent unlocks it. Admins listed in
ADMIN_USER_IDS hear about every new access request.
"""

import asyncio
import logging
from typing import Iterable, Optional

import sendgrid
from sendgrid.helpers.mail import Email, Mail, PlainTextContent, To
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.app.config import get_settings
from premarket_platform.domain.enums import GrantStatus, NotificationType
from premarket_platform.domain.models import GrantAccess, Notification, PreMarketRequest

logger = logging.getLogger(__name__)


class GrantNotifier:
    """Fire-and-forget notifications for grant lifecycle events."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Agent
    # ------------------------------------------------------------------

    async def access_unlocked(self, grant: GrantAccess) -> None:
        """Tell the agent, then the renter who owns the request."""
        grant_id, request_pk = grant.id, grant.request_id
        if grant.status == GrantStatus.FREE.value:
            description = "You were granted free access to this pre-market request."
        else:
            description = (
                f"Your payment of ${grant.charge_amount:,.2f} succeeded. "
                "Full request details are now available."
            )
        await self._notify_agent(grant, NotificationType.ACCESS_UNLOCKED, "Access unlocked", description)
        await self._notify_renter(grant_id, request_pk)

    async def payment_failed(self, grant: GrantAccess) -> None:
        description = (
            f"Payment failed after {grant.attempts} attempts. "
            "Contact support to request access again."
        )
        await self._notify_agent(grant, NotificationType.PAYMENT_FAILED, "Payment failed", description)

    async def grant_rejected(self, grant: GrantAccess) -> None:
        description = "Your access request was rejected."
        if grant.rejection_reason:
            description += f" Reason: {grant.rejection_reason}"
        await self._notify_agent(grant, NotificationType.GRANT_REJECTED, "Access request rejected", description)

    # ------------------------------------------------------------------
    # Renter and admins
    # ------------------------------------------------------------------

    async def renter_access_granted(self, grant: GrantAccess) -> None:
        """In-app notice to request.renter_id that an agent can now see the full request."""
        await self._notify_renter(grant.id, grant.request_id)

    async def _notify_renter(self, grant_id: str, request_pk: str) -> None:
        request = await self._load_request_ids(request_pk)
        if request is None:
            logger.warning("Grant %s points at missing request %s; renter not notified", grant_id, request_pk)
            return
        await self._dispatch(
            NotificationType.RENTER_ACCESS_GRANTED,
            "An agent unlocked your request",
            f"An agent now has access to the details of request {request.request_id}.",
            recipient_ids=[request.renter_id],
            grant_id=grant_id,
            request_id=request_pk,
        )

    async def access_requested(self, grant: GrantAccess) -> None:
        """Alert admins that an agent asked for access. No-op when no admin is configured."""
        grant_id, request_pk = grant.id, grant.request_id
        agent_id, status = grant.agent_id, grant.status
        admin_ids = self.settings.admin_user_id_list
        alert_email = self.settings.admin_alert_email or None
        if not admin_ids and not alert_email:
            return

        request = await self._load_request_ids(request_pk)
        public_id = request.request_id if request is not None else request_pk
        await self._dispatch(
            NotificationType.ACCESS_REQUESTED,
            "New access request",
            f"Agent {agent_id} requested access to request {public_id}. Grant status: {status}.",
            recipient_ids=admin_ids,
            email=alert_email,
            grant_id=grant_id,
            request_id=request_pk,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _notify_agent(self, grant: GrantAccess, kind: NotificationType, title: str, description: str) -> None:
        # Read before commit/rollback can expire the instance.
        await self._dispatch(
            kind, title, description,
            recipient_ids=[grant.agent_id],
            email=grant.agent_email,
            grant_id=grant.id,
            request_id=grant.request_id,
        )

    async def _load_request_ids(self, request_pk: str):
        try:
            result = await self.db.execute(
                select(PreMarketRequest.request_id, PreMarketRequest.renter_id).where(PreMarketRequest.id == request_pk)
            )
            return result.one_or_none()
        except Exception as e:
            logger.error("Failed to look up request %s for notification (non-blocking): %s", request_pk, e)
            return None

    async def _dispatch(
        self,
        kind: NotificationType,
        title: str,
        description: str,
        *,
        recipient_ids: Iterable[str],
        email: Optional[str] = None,
        grant_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> None:
        recipient_ids = list(recipient_ids)
        try:
            for recipient_id in recipient_ids:
                self.db.add(
                    Notification(
                        recipient_id=recipient_id,
                        type=kind.value,
                        title=title,
                        description=description,
                        grant_id=grant_id,
                        request_id=request_id,
                    )
                )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Failed to store %s notification for grant %s (non-blocking): %s",
                kind.value, grant_id, e,
            )
            return

        if email and self.settings.sendgrid_api_key and self.settings.notification_from_email:
            try:
                await asyncio.to_thread(self._send_email, email, title, description)
            except Exception as e:
                logger.error("Failed to e-mail %s for grant %s (non-blocking): %s", kind.value, grant_id, e)

        logger.info(
            "Notification %s dispatched: grant=%s recipients=%s",
            kind.value, grant_id, ",".join(recipient_ids) or "-",
        )

    def _send_email(self, to_email: str, subject: str, body: str) -> None:
        client = sendgrid.SendGridAPIClient(api_key=self.settings.sendgrid_api_key)
        message = Mail(
            from_email=Email(self.settings.notification_from_email, "Pre-Market Access"),
            to_emails=To(to_email),
            subject=subject,
            plain_text_content=PlainTextContent(body),
        )
        response = client.send(message)
        logger.info("SendGrid e-mail to %s: status=%s", to_email, response.status_code)
