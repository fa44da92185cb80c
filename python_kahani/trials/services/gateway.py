"""
Messaging gateway for the WhatsApp channel (Twilio).

Capabilities used by the conversation core:
- send_text: one outbound text, reported as ok / transient / permanent
- fetch_media_metadata: content type (and size when known) of an inbound media
- download_media: the media bytes

Transport exceptions never leave this module unclassified.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
import requests
from django.conf import settings
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from trials.services.errors import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from trials.services.normalization import normalize_phone_number, is_valid_phone
from trials.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = 'audio/ogg'
RATE_LIMIT_CODES = {20429}
MEDIA_URL_PATTERN = re.compile(r'/Messages/(?P<message_sid>[^/]+)/Media/(?P<media_sid>[^/?]+)')


class SendStatus(str, Enum):
    OK = 'ok'
    TRANSIENT_ERROR = 'transient_error'
    PERMANENT_ERROR = 'permanent_error'


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SendStatus.OK

    @classmethod
    def failure(cls, error: ProviderError) -> 'SendResult':
        if isinstance(error, TransientProviderError):
            return cls(SendStatus.TRANSIENT_ERROR, error=str(error))
        return cls(SendStatus.PERMANENT_ERROR, error=str(error))


@dataclass(frozen=True)
class MediaRef:
    """Where an inbound voice note lives at the provider."""
    url: str
    message_sid: Optional[str] = None
    media_sid: Optional[str] = None
    content_type: Optional[str] = None

    @classmethod
    def from_url(cls, url: str, content_type: Optional[str] = None) -> 'MediaRef':
        # https://api.twilio.com/2010-04-01/Accounts/{AccountSid}/Messages/{MessageSid}/Media/{MediaSid}
        match = MEDIA_URL_PATTERN.search(url or '')
        if not match:
            return cls(url=url, content_type=content_type)
        return cls(
            url=url,
            message_sid=match.group('message_sid'),
            media_sid=match.group('media_sid'),
            content_type=content_type,
        )

    @property
    def media_id(self) -> str:
        return self.media_sid or self.url


@dataclass(frozen=True)
class MediaMetadata:
    mime_type: str
    size_bytes: Optional[int] = None


def is_transient_status(status_code: Optional[int], code: Optional[int] = None) -> bool:
    """429, Twilio's rate-limit code and 5xx are worth retrying."""
    if code in RATE_LIMIT_CODES:
        return True
    if status_code is None:
        return False
    return status_code == 429 or 500 <= status_code < 600


def classify_twilio_error(exc: Exception) -> ProviderError:
    """Convert a Twilio SDK / requests exception into a provider error kind."""
    if isinstance(exc, TwilioRestException):
        message = f"Twilio error {exc.status} (code {exc.code}): {exc.msg}"
        if is_transient_status(exc.status, exc.code):
            return TransientProviderError(message, status_code=exc.status, code=exc.code)
        return PermanentProviderError(message, status_code=exc.status, code=exc.code)
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return TransientProviderError(f"Network error talking to Twilio: {exc}")
    return PermanentProviderError(f"Unexpected Twilio failure: {exc}")


def format_whatsapp_address(phone: str) -> str:
    return f"whatsapp:+{normalize_phone_number(phone)}"


class TwilioWhatsAppGateway:
    """
    Twilio-backed implementation of the messaging gateway.

    Messages and media metadata go through the Twilio SDK; media bytes are
    fetched with httpx using the account credentials as basic auth.
    """

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[Client] = None,
    ):
        self.account_sid = account_sid if account_sid is not None else settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number if from_number is not None else settings.TWILIO_WHATSAPP_NUMBER
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self.client = client
        if self.client is None and self.configured:
            self.client = Client(
                self.account_sid,
                self.auth_token,
                http_client=TwilioHttpClient(timeout=self.timeout),
            )

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send_text(self, recipient: str, body: str) -> SendResult:
        """
        Send one WhatsApp text message.

        Args:
            recipient: Phone number in any format, normalized before dispatch
            body: Message text

        Returns:
            SendResult; never raises for provider failures
        """
        if not self.configured or self.client is None:
            logger.warning("Twilio credentials not configured. Skipping WhatsApp message.")
            return SendResult(SendStatus.PERMANENT_ERROR, error='gateway not configured')

        normalized = normalize_phone_number(recipient)
        if not is_valid_phone(normalized):
            logger.error(f"Invalid recipient phone number: {recipient!r}")
            return SendResult(SendStatus.PERMANENT_ERROR, error='invalid recipient')

        try:
            message = self.client.messages.create(
                from_=format_whatsapp_address(self.from_number),
                to=format_whatsapp_address(normalized),
                body=body,
            )
        except (TwilioException, requests.exceptions.RequestException) as e:
            error = classify_twilio_error(e)
            logger.error(
                f"Failed to send WhatsApp text message to {normalized}: {error} "
                f"(status={error.status_code}, code={error.code})"
            )
            return SendResult.failure(error)

        logger.info(f"WhatsApp text message sent to {normalized}, sid={message.sid}")
        return SendResult(SendStatus.OK, message_id=message.sid)

    def fetch_media_metadata(self, media_ref: MediaRef) -> MediaMetadata:
        """
        Look up the content type of an inbound media item.

        Raises:
            PermanentProviderError: media not found or credentials rejected
            TransientProviderError: rate limited, 5xx, network failure
        """
        fallback = MediaMetadata(mime_type=media_ref.content_type or DEFAULT_MEDIA_TYPE)
        if not media_ref.message_sid or not media_ref.media_sid:
            logger.warning(f"Unexpected media URL format, using webhook metadata: {media_ref.url}")
            return fallback
        if self.client is None:
            raise PermanentProviderError('gateway not configured')

        try:
            media = self.client.messages(media_ref.message_sid).media(media_ref.media_sid).fetch()
        except (TwilioException, requests.exceptions.RequestException) as e:
            error = classify_twilio_error(e)
            if error.status_code == 404:
                error = PermanentProviderError(
                    f"Media {media_ref.media_sid} not found", status_code=404, code=error.code
                )
            logger.warning(f"Failed to fetch media metadata for {media_ref.media_sid}: {error}")
            raise error from e

        logger.debug(f"Retrieved media info for {media_ref.media_sid}: {media.content_type}")
        return MediaMetadata(mime_type=media.content_type or fallback.mime_type)

    def download_media(self, media_ref: MediaRef) -> bytes:
        """
        Download media bytes with basic auth (AccountSid:AuthToken).

        Raises:
            PermanentProviderError: 4xx other than 429, or payload over MAX_MEDIA_BYTES
            TransientProviderError: 429, 5xx, timeout, connection failure
        """
        if not self.configured:
            raise PermanentProviderError('gateway not configured')

        try:
            with httpx.stream(
                'GET',
                media_ref.url,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
                follow_redirects=True,
            ) as response:
                if not 200 <= response.status_code < 300:
                    message = f"Media download failed with HTTP {response.status_code}"
                    logger.error(f"{message} for {media_ref.media_id}")
                    if is_transient_status(response.status_code):
                        raise TransientProviderError(message, status_code=response.status_code)
                    raise PermanentProviderError(message, status_code=response.status_code)
                content = _read_limited(response, media_ref, settings.MAX_MEDIA_BYTES)
        except httpx.TimeoutException as e:
            logger.error(f"Timeout downloading media {media_ref.media_id}: {e}")
            raise TransientProviderError(f"Timeout downloading media: {e}") from e
        except httpx.TransportError as e:
            logger.error(f"Connection error downloading media {media_ref.media_id}: {e}")
            raise TransientProviderError(f"Connection error downloading media: {e}") from e
        except httpx.HTTPError as e:
            # redirect loops, undecodable bodies
            logger.error(f"Media download for {media_ref.media_id} failed: {e!r}")
            raise PermanentProviderError(f"Media download failed: {e}") from e

        logger.info(f"Downloaded media {media_ref.media_id}: {len(content)} bytes")
        return content


def _read_limited(response, media_ref: MediaRef, limit: int) -> bytes:
    """Read a streamed body, giving up as soon as it passes limit bytes."""
    declared = response.headers.get('content-length')
    if declared and declared.isdigit() and int(declared) > limit:
        raise PermanentProviderError(
            f"Media {media_ref.media_id} is {declared} bytes, above the {limit} limit"
        )
    chunks = []
    received = 0
    for chunk in response.iter_bytes():
        received += len(chunk)
        if received > limit:
            raise PermanentProviderError(
                f"Media {media_ref.media_id} is over the {limit} byte limit"
            )
        chunks.append(chunk)
    return b''.join(chunks)


def send_with_retry(gateway, recipient: str, body: str, policy: Optional[RetryPolicy] = None) -> SendResult:
    """
    Send a text, retrying transient failures with the bounded retry policy.
    Permanent failures are returned immediately.
    """
    policy = policy or RetryPolicy.from_settings()

    def attempt() -> SendResult:
        result = gateway.send_text(recipient, body)
        if result.status == SendStatus.TRANSIENT_ERROR:
            raise TransientProviderError(result.error or 'transient send failure')
        return result

    try:
        return policy.call(attempt)
    except TransientProviderError as e:
        logger.error(f"Giving up sending to {recipient} after {policy.max_attempts} attempts: {e}")
        return SendResult(SendStatus.TRANSIENT_ERROR, error=str(e))


def get_gateway() -> TwilioWhatsAppGateway:
    """Build the gateway configured in settings."""
    return TwilioWhatsAppGateway()
