from __future__ import annotations

import http.client
import json
import logging
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Literal, Protocol

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from .config import Settings
from .models import Channel

logger = logging.getLogger(__name__)

DeliveryStatus = Literal["sent", "failed"]

_TAG_RE = re.compile(r"<[^>]+>")


class DeliveryAdapterError(Exception):
    """Configuration or connectivity fault. Not a provider rejection."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class DeliveryConfigurationError(DeliveryAdapterError):
    """The adapter cannot send on this channel with the current settings."""


class DeliveryTransportError(DeliveryAdapterError):
    """The provider could not be reached or answered with a server fault."""


@dataclass(frozen=True)
class DeliveryRequest:
    channel: Channel
    destination: str
    content: str
    subject: str | None
    recipient_name: str
    sender_name: str
    request_id: str
    business_id: str
    tracking_uuid: str


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    attempted_at: datetime
    external_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class DeliveryAdapter(Protocol):
    def send(self, payload: DeliveryRequest) -> DeliveryResult: ...


def _failed(error_code: str, error_message: str) -> DeliveryResult:
    return DeliveryResult(
        status="failed",
        attempted_at=datetime.now(timezone.utc),
        error_code=error_code,
        error_message=error_message,
    )


class StubDeliveryAdapter:
    """Deterministic adapter for local runs and tests. Records every send."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 0
        self.sent: list[DeliveryRequest] = []

    def reset(self) -> None:
        with self._lock:
            self._counter = 0
            self.sent.clear()

    def send(self, payload: DeliveryRequest) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        with self._lock:
            self.sent.append(payload)
            self._counter += 1
            sequence = self._counter

        if "fail" in payload.destination.lower():
            return DeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub adapter forced failure for destination",
            )

        return DeliveryResult(
            status="sent",
            attempted_at=attempted_at,
            external_id=f"stub-{payload.request_id}-{sequence}",
        )


def html_to_text(html: str) -> str:
    return _TAG_RE.sub("", html).strip()


class SendGridEmailSender:
    """Sends email through the SendGrid v3 mail/send endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        from_address: str,
        from_name: str = "",
        base_url: str = "https://api.sendgrid.com",
        timeout_seconds: float = 15.0,
    ) -> None:
        stripped_key = api_key.strip()
        if not stripped_key:
            raise DeliveryConfigurationError("sendgrid_not_configured", "SENDGRID_API_KEY must not be empty")
        self._api_key = stripped_key
        self._from_address = from_address.strip()
        self._from_name = from_name.strip()
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = timeout_seconds

    def send(self, payload: DeliveryRequest) -> DeliveryResult:
        body = {
            "personalizations": [
                {
                    "to": [{"email": payload.destination, "name": payload.recipient_name}],
                    "custom_args": {
                        "requestId": payload.request_id,
                        "businessId": payload.business_id,
                        "trackingUuid": payload.tracking_uuid,
                    },
                }
            ],
            "from": {"email": self._from_address, "name": payload.sender_name.strip() or self._from_name},
            "subject": payload.subject or "",
            "content": [
                {"type": "text/plain", "value": html_to_text(payload.content)},
                {"type": "text/html", "value": payload.content},
            ],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }
        try:
            message_id = self._post(body)
        except (socket.timeout, TimeoutError) as exc:
            return _failed("timeout", f"SendGrid request timed out: {exc}")
        except _ProviderRejection as exc:
            return _failed(exc.error_code, exc.message)
        return DeliveryResult(
            status="sent",
            attempted_at=datetime.now(timezone.utc),
            external_id=message_id or f"sendgrid-{payload.request_id}",
        )

    def _post(self, body: dict[str, object]) -> str | None:
        url = f"{self._base_url}/v3/mail/send"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return response.headers.get("X-Message-Id")
        except urllib.error.HTTPError as exc:
            detail = _read_error_body(exc)
            if exc.code in {401, 403}:
                raise DeliveryConfigurationError(
                    f"http_{exc.code}",
                    f"SendGrid rejected the API key: HTTP {exc.code}",
                ) from exc
            if exc.code == 429 or exc.code >= 500:
                raise DeliveryTransportError(
                    f"http_{exc.code}",
                    f"SendGrid unavailable: HTTP {exc.code}",
                ) from exc
            raise _ProviderRejection(f"http_{exc.code}", f"HTTP {exc.code}: {detail or exc.reason}") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise TimeoutError(str(exc.reason)) from exc
            raise DeliveryTransportError(
                "connection_error",
                f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError):
            raise
        except (http.client.HTTPException, OSError) as exc:
            # Raised while reading the response, after urlopen stopped wrapping errors.
            raise DeliveryTransportError(
                "connection_error",
                f"Connection error: {type(exc).__name__}: {exc}",
            ) from exc


class _ProviderRejection(Exception):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def _read_error_body(exc: urllib.error.HTTPError) -> str:
    try:
        raw = exc.read().decode("utf-8")
    except (OSError, ValueError):
        return ""
    try:
        parsed = json.loads(raw)
    except ValueError:
        return raw.strip()
    errors = parsed.get("errors") if isinstance(parsed, dict) else None
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict) and first.get("message"):
            return str(first["message"])
    return raw.strip()


class TwilioSmsSender:
    """Sends SMS through the Twilio REST API."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: float = 15.0,
        client: TwilioClient | None = None,
    ) -> None:
        if not (account_sid.strip() and auth_token.strip() and from_number.strip()):
            raise DeliveryConfigurationError(
                "twilio_not_configured",
                "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER must be set",
            )
        self._from_number = from_number.strip()
        self._client = client or TwilioClient(
            account_sid.strip(),
            auth_token.strip(),
            http_client=TwilioHttpClient(timeout=timeout_seconds),
        )

    def send(self, payload: DeliveryRequest) -> DeliveryResult:
        try:
            message = self._client.messages.create(
                body=payload.content,
                from_=self._from_number,
                to=payload.destination,
            )
        except TwilioRestException as exc:
            if exc.status in {401, 403}:
                raise DeliveryConfigurationError(
                    f"twilio_{exc.status}",
                    f"Twilio rejected the credentials: {exc.msg}",
                ) from exc
            if exc.status == 429 or exc.status >= 500:
                raise DeliveryTransportError(
                    f"twilio_{exc.status}",
                    f"Twilio unavailable: {exc.msg}",
                ) from exc
            code = exc.code if exc.code is not None else exc.status
            return _failed(f"twilio_{code}", str(exc.msg))
        except requests.exceptions.Timeout as exc:
            return _failed("timeout", f"Twilio request timed out: {exc}")
        except requests.exceptions.ConnectionError as exc:
            raise DeliveryTransportError("connection_error", f"Connection error: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise DeliveryTransportError("request_error", f"Twilio request failed: {exc}") from exc
        return DeliveryResult(
            status="sent",
            attempted_at=datetime.now(timezone.utc),
            external_id=message.sid,
        )


class ProviderDeliveryAdapter:
    """Routes each send to the sender configured for its channel."""

    def __init__(
        self,
        *,
        email_sender: SendGridEmailSender | None = None,
        sms_sender: TwilioSmsSender | None = None,
    ) -> None:
        self._senders: dict[str, object] = {}
        if email_sender is not None:
            self._senders["EMAIL"] = email_sender
        if sms_sender is not None:
            self._senders["SMS"] = sms_sender

    def send(self, payload: DeliveryRequest) -> DeliveryResult:
        sender = self._senders.get(payload.channel)
        if sender is None:
            raise DeliveryConfigurationError(
                "channel_not_configured",
                f"no delivery provider configured for channel {payload.channel}",
            )
        return sender.send(payload)  # type: ignore[attr-defined]


def create_delivery_adapter(settings: Settings) -> DeliveryAdapter:
    if not settings.uses_live_delivery:
        return StubDeliveryAdapter()

    email_sender = None
    sms_sender = None
    if settings.provider_configured("EMAIL"):
        email_sender = SendGridEmailSender(
            api_key=settings.sendgrid_api_key,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.sendgrid_api_base_url,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
    else:
        logger.warning("delivery.provider.unconfigured", extra={"channel": "EMAIL"})
    if settings.provider_configured("SMS"):
        sms_sender = TwilioSmsSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
    else:
        logger.warning("delivery.provider.unconfigured", extra={"channel": "SMS"})
    return ProviderDeliveryAdapter(email_sender=email_sender, sms_sender=sms_sender)


def mask_contact_target(contact_target: str, channel: Channel) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "EMAIL" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "SMS":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
