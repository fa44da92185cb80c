"""
Celery tasks for inbound message processing and the scheduler tick.
"""
import logging

from celery import shared_task

from trials.models import InboundMessage
from trials.services.gateway import get_gateway
from trials.services.inbound import TransientInboundFailure, process_inbound
from trials.services.scheduler import run_tick

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(TransientInboundFailure,),
    retry_backoff=60,  # Exponential backoff starting at 60s
    retry_backoff_max=3600,  # Max backoff of one hour
    max_retries=6,
    retry_jitter=False
)
def process_inbound_message(self, message_id: int):
    """
    Route one stored webhook delivery through the conversation.

    Provider failures are classified and recorded on the message by the
    services. A voice note whose ingestion failed transiently is retried
    by Celery with backoff; the message stays FAILED in between, and a
    retry picks it up again from there.

    Args:
        message_id: ID of the InboundMessage to process
    """
    try:
        message = InboundMessage.objects.get(id=message_id)
    except InboundMessage.DoesNotExist:
        logger.error(f"Inbound message {message_id} not found in database")
        raise

    logger.info(
        f"Processing inbound message {message_id} ({message.kind}), status: {message.status}, "
        f"attempt {self.request.retries + 1}"
    )
    retrying_failure = self.request.retries > 0 and message.status == InboundMessage.Status.FAILED
    if message.status != InboundMessage.Status.RECEIVED and not retrying_failure:
        logger.info(f"Inbound message {message_id} already {message.status}; skipping")
        return message.status

    try:
        message = process_inbound(message, get_gateway())
    except TransientInboundFailure as e:
        logger.warning(f"Inbound message {message_id} failed transiently, will retry: {e}")
        raise
    except Exception as e:
        message.status = InboundMessage.Status.FAILED
        message.outcome = f"error: {e}"[:100]
        message.save(update_fields=['status', 'outcome', 'updated_at'])
        logger.error(f"Inbound message {message_id} FAILED: {e}", exc_info=True)
        raise

    return message.status


@shared_task
def run_scheduler_tick():
    """Beat entry point: one pass over every trial with an elapsed timer."""
    return run_tick(gateway=get_gateway())
