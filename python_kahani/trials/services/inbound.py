"""
Inbound webhook deliveries: acceptance, trial routing, and processing.

Acceptance is keyed by the provider message id. A redelivered id is a
duplicate unless its earlier delivery failed, in which case it is queued
again; ingestion downstream is idempotent so that is safe.
"""
import logging
from typing import Optional, Tuple

from django.db import IntegrityError, transaction

from trials.models import FreeTrial, InboundMessage
from trials.services.conversation import handle_inbound_text, handle_voice_note
from trials.services.gateway import MediaRef
from trials.services.ingestion import IngestionStatus
from trials.services.normalization import extract_trial_id, normalize_phone_number
from trials.services.state_machine import QUESTIONING_STATES, TERMINAL_STATES, State

logger = logging.getLogger(__name__)


class InvalidInboundPayload(ValueError):
    """Webhook payload without the fields needed to route it."""


class TransientInboundFailure(Exception):
    """A voice note could not be ingested for a reason worth retrying later."""


def _first(payload, key: str) -> str:
    value = payload.get(key)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return '' if value is None else str(value).strip()


def parse_twilio_payload(payload) -> dict:
    """
    Pull the fields we use out of a Twilio WhatsApp webhook (form or JSON).

    Raises:
        InvalidInboundPayload: no MessageSid or no sender
    """
    message_sid = _first(payload, 'MessageSid') or _first(payload, 'SmsMessageSid')
    sender = _first(payload, 'From')
    if not message_sid:
        raise InvalidInboundPayload('Missing MessageSid')
    if not sender:
        raise InvalidInboundPayload('Missing From')

    try:
        num_media = int(_first(payload, 'NumMedia') or 0)
    except ValueError:
        num_media = 0

    media_url = (_first(payload, 'MediaUrl0') or None) if num_media else None
    content_type = (_first(payload, 'MediaContentType0') or None) if num_media else None

    if num_media and content_type and content_type.lower().startswith('audio/'):
        kind = InboundMessage.Kind.VOICE
    elif num_media:
        kind = InboundMessage.Kind.OTHER
    else:
        kind = InboundMessage.Kind.TEXT

    return {
        'provider_message_id': message_sid,
        'sender_phone': normalize_phone_number(sender),
        'kind': kind,
        'body': _first(payload, 'Body'),
        'media_url': media_url,
        'media_content_type': content_type,
    }


def resolve_trial(sender_phone: str, body: str) -> Optional[FreeTrial]:
    """
    Latest active trial for this storyteller phone; otherwise the trial
    whose id is quoted in the text, if it is still waiting for first contact.
    """
    trial = (
        FreeTrial.objects.filter(storyteller_phone=sender_phone)
        .exclude(conversation_state__in=TERMINAL_STATES)
        .order_by('-created_at')
        .first()
    )
    if trial:
        return trial

    trial_id = extract_trial_id(body)
    if not trial_id:
        return None
    trial = FreeTrial.objects.filter(pk=trial_id, conversation_state=State.AWAITING_INITIAL_CONTACT).first()
    if trial and trial.storyteller_phone and trial.storyteller_phone != sender_phone:
        logger.warning(f"Trial {trial_id} already bound to another storyteller phone")
        return None
    return trial


def _plain_dict(payload) -> dict:
    if hasattr(payload, 'lists'):
        return {key: values[0] if len(values) == 1 else values for key, values in payload.lists()}
    return dict(payload)


def accept_inbound_message(payload, source_headers: Optional[dict] = None) -> Tuple[InboundMessage, bool]:
    """
    Store one webhook delivery.

    Returns:
        (message, should_process). should_process is False for a duplicate
        delivery that already succeeded or is in flight.
    """
    fields = parse_twilio_payload(payload)
    message_id = fields['provider_message_id']

    with transaction.atomic():
        existing = InboundMessage.objects.select_for_update().filter(provider_message_id=message_id).first()
        if existing:
            if existing.status != InboundMessage.Status.FAILED:
                logger.info(f"Duplicate delivery of {message_id} ({existing.status}) ignored")
                return existing, False
            existing.status = InboundMessage.Status.RECEIVED
            existing.outcome = None
            existing.save(update_fields=['status', 'outcome', 'updated_at'])
            logger.info(f"Redelivery of failed message {message_id}; queued again")
            return existing, True

        trial = resolve_trial(fields['sender_phone'], fields['body'])
        question_index = None
        if (
            trial
            and fields['kind'] == InboundMessage.Kind.VOICE
            and trial.conversation_state in QUESTIONING_STATES
        ):
            question_index = trial.current_question_index

        try:
            with transaction.atomic():
                message = InboundMessage.objects.create(
                    free_trial=trial,
                    question_index=question_index,
                    raw_payload=_plain_dict(payload),
                    source_headers=source_headers,
                    **fields,
                )
        except IntegrityError:
            logger.info(f"Concurrent delivery of {message_id} won the insert")
            return InboundMessage.objects.get(provider_message_id=message_id), False

    logger.info(
        f"Inbound {message_id} ({message.kind}) stored as {message.id}, "
        f"trial={trial.id if trial else None}, question={question_index}"
    )
    return message, True


def _finish(message: InboundMessage, status: str, outcome: str) -> InboundMessage:
    message.status = status
    message.outcome = outcome
    message.save(update_fields=['status', 'outcome', 'updated_at'])
    logger.info(f"Inbound {message.provider_message_id}: {status} ({outcome})")
    return message


def process_inbound(message: InboundMessage, gateway, storage=None, retry_policy=None) -> InboundMessage:
    """
    Hand a stored delivery to the conversation and record what happened.

    Raises:
        TransientInboundFailure: voice note ingestion failed transiently; the
            message is already recorded FAILED
    """
    if message.free_trial_id is None:
        return _finish(message, InboundMessage.Status.IGNORED, 'no matching trial')

    if message.kind == InboundMessage.Kind.TEXT:
        outcome = handle_inbound_text(message.free_trial_id, message.sender_phone, message.body, gateway)
        return _finish(message, InboundMessage.Status.PROCESSED, outcome.value)

    if message.kind == InboundMessage.Kind.OTHER:
        return _finish(message, InboundMessage.Status.IGNORED, 'unsupported media')

    if message.question_index is None or not message.media_url:
        return _finish(message, InboundMessage.Status.IGNORED, 'no question open')

    media_ref = MediaRef.from_url(message.media_url, message.media_content_type)
    result = handle_voice_note(
        message.free_trial_id,
        message.question_index,
        media_ref,
        gateway,
        storage=storage,
        retry_policy=retry_policy,
    )
    if result.status == IngestionStatus.FAILED:
        _finish(message, InboundMessage.Status.FAILED, (result.error or 'ingestion failed')[:100])
        if result.transient:
            raise TransientInboundFailure(result.error)
        return message
    if result.status == IngestionStatus.REJECTED:
        return _finish(message, InboundMessage.Status.IGNORED, result.error or 'rejected')
    outcome = result.outcome.value if result.outcome else result.status.value
    return _finish(message, InboundMessage.Status.PROCESSED, outcome)
