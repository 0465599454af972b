"""Push (APNs) and SMS (Twilio) delivery over httpx."""

from __future__ import annotations

import logging
import time
from typing import Iterable, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from familybudget import models
from familybudget.core.config import settings
from familybudget.core.errors import TransportError
from familybudget.schemas import FanOutResult, PushMessage, PushResult, SmsReceipt

logger = logging.getLogger(__name__)

APNS_PRODUCTION_URL = "https://api.push.apple.com"
APNS_SANDBOX_URL = "https://api.sandbox.push.apple.com"
TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class PushTransport(Protocol):
    def send(self, tokens: list[str], message: PushMessage) -> PushResult: ...


class SmsTransport(Protocol):
    def send(self, to: str, text: str) -> SmsReceipt: ...


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------

class ApnsPushTransport:
    """APNs provider API (HTTP/2) with a pre-issued provider token."""

    def __init__(
        self,
        auth_token: str | None = None,
        topic: str | None = None,
        use_sandbox: bool | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.auth_token = auth_token if auth_token is not None else settings.APNS_AUTH_TOKEN
        self.topic = topic or settings.APNS_TOPIC
        sandbox = settings.APNS_USE_SANDBOX if use_sandbox is None else use_sandbox
        self.base_url = APNS_SANDBOX_URL if sandbox else APNS_PRODUCTION_URL
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(http2=True, timeout=settings.HTTP_TIMEOUT_SECONDS)
        return self._client

    def _payload(self, message: PushMessage) -> dict:
        aps: dict = {"alert": {"title": message.title, "body": message.body}, "sound": message.sound}
        if message.badge is not None:
            aps["badge"] = message.badge
        return {"aps": aps, **message.data.model_dump(exclude_none=True)}

    def send(self, tokens: list[str], message: PushMessage) -> PushResult:
        if not self.auth_token:
            logger.error("[APNs] Provider token not configured - check FAMBUDGET_APNS_AUTH_TOKEN")
            return PushResult(error="APNs not configured")

        headers = {
            "authorization": f"bearer {self.auth_token}",
            "apns-topic": self.topic,
            "apns-push-type": "alert",
        }
        payload = self._payload(message)
        sent = failed = 0
        for token in tokens:
            try:
                resp = self.client.post(f"{self.base_url}/3/device/{token}", json=payload, headers=headers)
            except httpx.HTTPError as exc:
                logger.error("[APNs] Send error for %s: %s", token[:8], exc)
                failed += 1
                continue
            if resp.status_code == 200:
                sent += 1
            else:
                logger.error("[APNs] Device %s rejected: %s %s", token[:8], resp.status_code, resp.text)
                failed += 1

        logger.info("[APNs] Sent to %d devices, failed: %d", sent, failed)
        return PushResult(sent=sent, failed=failed)


def _active_tokens(db: Session, *filters) -> list[str]:
    stmt = (
        select(models.DeviceToken.token)
        .join(models.Person, models.Person.id == models.DeviceToken.person_id)
        .where(models.DeviceToken.is_active.is_(True), *filters)
        .distinct()
    )
    return list(db.scalars(stmt))


def push_to_person(db: Session, transport: PushTransport, person_id: int, message: PushMessage) -> PushResult:
    tokens = _active_tokens(db, models.Person.id == person_id)
    if not tokens:
        logger.info("[APNs] No devices registered for person %s", person_id)
        return PushResult()
    return transport.send(tokens, message)


def push_to_parents(db: Session, transport: PushTransport, message: PushMessage) -> PushResult:
    tokens = _active_tokens(db, models.Person.role == models.PersonRole.PARENT)
    if not tokens:
        logger.info("[APNs] No parent devices registered")
        return PushResult()
    return transport.send(tokens, message)


# ---------------------------------------------------------------------------
# SMS
# ---------------------------------------------------------------------------

class TwilioSmsTransport:
    """Twilio Messages REST API.

    Without a real account SID (``AC...``) the transport runs in test mode and
    only logs what it would have sent.
    """

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.account_sid = account_sid if account_sid is not None else settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number if from_number is not None else settings.TWILIO_FROM_NUMBER
        self._client = client

    @property
    def test_mode(self) -> bool:
        return not self.account_sid.startswith("AC")

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)
        return self._client

    def send(self, to: str, text: str) -> SmsReceipt:
        if self.test_mode:
            logger.info('[TEST MODE] SMS to %s: "%s"', to, text)
            return SmsReceipt(sid=f"test_{int(time.time() * 1000)}", to=to, body=text)

        try:
            resp = self.client.post(
                f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json",
                data={"To": to, "From": self.from_number, "Body": text},
                auth=(self.account_sid, self.auth_token),
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send SMS to %s: %s", to, exc)
            raise TransportError(f"SMS to {to} failed") from exc

        sid = resp.json().get("sid", "")
        logger.info("SMS sent to %s: %s", to, sid)
        return SmsReceipt(sid=sid, to=to, body=text)


def send_many(transport: SmsTransport, recipients: Iterable[str], text: str) -> FanOutResult:
    """Send the same text to every recipient; one failure never stops the rest."""
    result = FanOutResult()
    for to in recipients:
        try:
            transport.send(to, text)
            result.succeeded += 1
        except Exception:
            logger.exception("SMS delivery to %s failed", to)
            result.failed += 1
    logger.info("SMS sent: %d succeeded, %d failed", result.succeeded, result.failed)
    return result
