"""Best-effort outbound e-mail for lifecycle events."""
from __future__ import annotations

import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, Iterable, Optional

from loadboard.core.config import get_settings
from loadboard.core.logging import logger
from loadboard.models.accounts import AccountRecord
from loadboard.models.lifecycle import BidRecord, LoadRecord
from loadboard.services.lifecycle_state import LifecycleStateStore, lifecycle_state_store


class SmtpEmailTransport:
    """Deliver HTML mail over SMTP with STARTTLS."""

    def __init__(self) -> None:
        self.settings = get_settings()

    def deliver(self, to: str, subject: str, html: str) -> None:
        msg = EmailMessage()
        msg["From"] = formataddr((self.settings.email_from_name, self.settings.email_from))
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(html, subtype="html")

        username = (self.settings.smtp_username or "").strip()
        password = (self.settings.smtp_password or "").strip()
        with smtplib.SMTP(self.settings.smtp_server, int(self.settings.smtp_port), timeout=20) as smtp:
            smtp.ehlo()
            smtp.starttls()
            smtp.ehlo()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class NotificationService:
    """Send lifecycle e-mails; failures are logged and recorded, never raised."""

    def __init__(
        self,
        store: Optional[LifecycleStateStore] = None,
        transport: Optional[SmtpEmailTransport] = None,
    ) -> None:
        self.settings = get_settings()
        self.store = store or lifecycle_state_store
        self.transport = transport or SmtpEmailTransport()

    def is_enabled(self) -> bool:
        return bool(self.settings.email_enabled) and self.settings.smtp_configured()

    def send(self, to: str, subject: str, html: str, event: str = "generic") -> Dict[str, Any]:
        recipient = (to or "").strip()
        payload = {"event": event, "subject": subject}
        if not recipient:
            logger.warning("Notification skipped, no recipient", notification_event=event)
            return self._record(recipient, payload, "skipped", reason="missing_recipient")
        if not self.is_enabled():
            logger.info("Notification skipped, e-mail disabled", notification_event=event, to=recipient)
            return self._record(recipient, payload, "skipped", reason="email_disabled")

        try:
            self.transport.deliver(recipient, subject, html)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Notification delivery failed", notification_event=event, to=recipient, error=str(exc))
            return self._record(recipient, payload, "failed", reason=str(exc))

        logger.info("Notification sent", notification_event=event, to=recipient)
        return self._record(recipient, payload, "sent")

    def _record(self, recipient: str, payload: Dict[str, Any], status: str, reason: str | None = None) -> Dict[str, Any]:
        if reason:
            payload = {**payload, "reason": reason}
        try:
            return self.store.add_outbound_message(
                channel="email",
                recipient=recipient or "unknown",
                payload=payload,
                status=status,
            )
        except Exception as exc:
            logger.error("Failed to record outbound message", to=recipient, error=str(exc))
            return {"channel": "email", "recipient": recipient, "status": status, "payload": payload}

    # Lifecycle messages

    def new_load(self, truckers: Iterable[AccountRecord], load: LoadRecord) -> int:
        subject = f"New load available: {load.origin.label()} to {load.destination.label()}"
        html = (
            f"<h2>New load posted</h2>"
            f"<p><b>{load.origin.label()}</b> to <b>{load.destination.label()}</b></p>"
            f"<p>Vehicle: {load.vehicle_type.value} | Weight: {load.weight:g} | "
            f"Rate: ${load.rate:,.2f} ({load.rate_type.value})</p>"
            f"<p>Pickup {load.pickup_date}, delivery {load.delivery_date}. Load ID {load.load_id}.</p>"
        )
        recipients = [trucker for trucker in truckers if trucker.email]
        if not self.is_enabled():
            logger.info("New load fan-out skipped, e-mail disabled", load_id=load.load_id, recipients=len(recipients))
            self._record(
                "approved_truckers",
                {"event": "load_posted", "load_id": load.load_id, "subject": subject, "recipients": len(recipients)},
                "skipped",
                reason="email_disabled",
            )
            return 0
        sent = 0
        for trucker in recipients:
            result = self.send(trucker.email, subject, html, event="load_posted")
            if result.get("status") == "sent":
                sent += 1
        return sent

    def bid_accepted(self, carrier: AccountRecord, load: LoadRecord, bid: BidRecord) -> Dict[str, Any]:
        html = (
            f"<h2>Your bid was accepted</h2>"
            f"<p>Hi {carrier.display_name()}, your bid of ${bid.rate:,.2f} on load {load.load_id} "
            f"({load.origin.label()} to {load.destination.label()}) was accepted.</p>"
            f"<p>Shipment number: {load.shipment_number or '-'}</p>"
        )
        return self.send(carrier.email, f"Bid accepted for load {load.load_id}", html, event="bid_accepted")

    def bid_accepted_shipper(self, shipper: AccountRecord, carrier: AccountRecord, load: LoadRecord) -> Dict[str, Any]:
        html = (
            f"<h2>Carrier assigned</h2>"
            f"<p>{carrier.display_name()} has been assigned to load {load.load_id} "
            f"({load.origin.label()} to {load.destination.label()}).</p>"
            f"<p>Shipment number: {load.shipment_number or '-'}</p>"
        )
        return self.send(shipper.email, f"Carrier assigned to load {load.load_id}", html, event="load_assigned")

    def bid_rejected(self, carrier: AccountRecord, load: LoadRecord, bid: BidRecord) -> Dict[str, Any]:
        reason = bid.rejection_reason or "No reason given"
        html = (
            f"<h2>Bid not accepted</h2>"
            f"<p>Hi {carrier.display_name()}, your bid on load {load.load_id} was not accepted.</p>"
            f"<p>Reason: {reason}</p>"
        )
        return self.send(carrier.email, f"Bid update for load {load.load_id}", html, event="bid_rejected")

    def delivery_approved(self, recipient: AccountRecord, load: LoadRecord) -> Dict[str, Any]:
        html = (
            f"<h2>Delivery approved</h2>"
            f"<p>Delivery of load {load.load_id} ({load.origin.label()} to {load.destination.label()}) "
            f"has been approved.</p>"
            f"<p>Shipment number: {load.shipment_number or '-'}</p>"
        )
        return self.send(recipient.email, f"Delivery approved for load {load.load_id}", html, event="delivery_approved")
