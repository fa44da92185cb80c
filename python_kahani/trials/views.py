"""
API views for the Story Gateway service.
"""
import logging
import uuid

from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.exceptions import ParseError
from rest_framework.parsers import FormParser, JSONParser, MultiPartParser
from rest_framework.response import Response
from rest_framework.views import APIView

from trials.models import FreeTrial
from trials.services.conversation import onboard_buyer, send_album_completion
from trials.services.gateway import get_gateway
from trials.services.inbound import InvalidInboundPayload, accept_inbound_message
from trials.services.normalization import normalize_phone_number
from trials.services.state_machine import Outcome
from trials.services.validation import validate_trial_request
from trials.tasks import process_inbound_message

logger = logging.getLogger(__name__)


def _source_headers(request) -> dict:
    return {
        'content-type': request.META.get('CONTENT_TYPE', ''),
        'user-agent': request.META.get('HTTP_USER_AGENT', ''),
        'x-forwarded-for': request.META.get('HTTP_X_FORWARDED_FOR', ''),
        'remote-addr': request.META.get('REMOTE_ADDR', ''),
        'x-twilio-signature': request.META.get('HTTP_X_TWILIO_SIGNATURE', ''),
    }


def _error(message: str, correlation_id: str, status_code: int) -> Response:
    return Response({'error': message, 'correlation_id': correlation_id}, status=status_code)


@method_decorator(csrf_exempt, name='dispatch')
class InboundWebhookView(APIView):
    """
    Webhook endpoint for WhatsApp messages from the messaging provider.

    POST /webhooks/whatsapp/
    - Accepts the provider's form-encoded payload (or JSON)
    - Stores the delivery keyed by its provider message id
    - Enqueues async processing unless it is a duplicate delivery
    - Returns 200 OK with message_id and correlation_id
    """
    parser_classes = [FormParser, MultiPartParser, JSONParser]

    def post(self, request):
        """
        Handle an incoming message.

        Returns:
            200 OK: Message accepted (or recognised as a duplicate)
            400 Bad Request: Empty or malformed payload
            500 Internal Server Error: Unexpected error
        """
        correlation_id = str(uuid.uuid4())

        try:
            payload = request.data

            if not payload:
                logger.warning(f"Empty webhook payload received, correlation_id={correlation_id}")
                return _error('Empty payload', correlation_id, status.HTTP_400_BAD_REQUEST)

            message, should_process = accept_inbound_message(payload, _source_headers(request))

            if should_process:
                process_inbound_message.delay(message.id)
                logger.info(
                    f"Inbound message {message.id} enqueued for processing, "
                    f"correlation_id={correlation_id}"
                )

            return Response(
                {
                    'status': 'accepted' if should_process else 'duplicate',
                    'message_id': message.id,
                    'correlation_id': correlation_id,
                },
                status=status.HTTP_200_OK
            )

        except InvalidInboundPayload as e:
            logger.warning(f"Invalid webhook payload: {e}, correlation_id={correlation_id}")
            return _error(str(e), correlation_id, status.HTTP_400_BAD_REQUEST)
        except ParseError as e:
            logger.warning(f"Malformed webhook payload: {e}, correlation_id={correlation_id}")
            return _error('Malformed payload', correlation_id, status.HTTP_400_BAD_REQUEST)
        except Exception as e:
            logger.error(
                f"Error processing webhook request: {e}, correlation_id={correlation_id}",
                exc_info=True
            )
            return _error('Internal server error', correlation_id, status.HTTP_500_INTERNAL_SERVER_ERROR)


class FreeTrialCreateView(APIView):
    """
    POST /api/trials/
    Create a free trial for a buyer and send them the link to forward to
    the storyteller.
    """

    def post(self, request):
        correlation_id = str(uuid.uuid4())

        try:
            payload = request.data
            is_valid, rejection_reason = validate_trial_request(payload)
            if not is_valid:
                logger.info(f"Trial request rejected: {rejection_reason}, correlation_id={correlation_id}")
                return _error(rejection_reason, correlation_id, status.HTTP_400_BAD_REQUEST)

            storyteller_phone = payload.get('storyteller_phone')
            trial = FreeTrial.objects.create(
                customer_phone=normalize_phone_number(payload['customer_phone']),
                buyer_name=payload['buyer_name'].strip(),
                storyteller_name=payload['storyteller_name'].strip(),
                selected_album=payload['selected_album'].strip(),
                storyteller_phone=normalize_phone_number(storyteller_phone) if storyteller_phone else None,
            )
            logger.info(f"Trial {trial.id} created, correlation_id={correlation_id}")

            onboarding_sent = onboard_buyer(trial, get_gateway())

            return Response(
                {
                    'trial_id': str(trial.id),
                    'conversation_state': trial.conversation_state,
                    'onboarding_sent': onboarding_sent,
                    'correlation_id': correlation_id,
                },
                status=status.HTTP_201_CREATED
            )

        except ParseError as e:
            logger.warning(f"Malformed JSON payload: {e}, correlation_id={correlation_id}")
            return _error('Malformed JSON', correlation_id, status.HTTP_400_BAD_REQUEST)
        except Exception as e:
            logger.error(f"Error creating trial: {e}, correlation_id={correlation_id}", exc_info=True)
            return _error('Internal server error', correlation_id, status.HTTP_500_INTERNAL_SERVER_ERROR)


class AlbumCompletionView(APIView):
    """
    POST /api/trials/<trial_id>/album/
    Send the finished album links to the storyteller of a completed trial.
    """

    def post(self, request, trial_id):
        correlation_id = str(uuid.uuid4())

        try:
            payload = request.data
            playlist_link = (payload.get('playlist_album_link') or '').strip()
            vinyl_link = (payload.get('vinyl_album_link') or '').strip()
            if not playlist_link or not vinyl_link:
                return _error('MISSING_REQUIRED_FIELD', correlation_id, status.HTTP_400_BAD_REQUEST)

            if not FreeTrial.objects.filter(pk=trial_id).exists():
                return _error('Trial not found', correlation_id, status.HTTP_404_NOT_FOUND)

            outcome = send_album_completion(trial_id, playlist_link, vinyl_link, get_gateway())
            if outcome == Outcome.NO_OP:
                return _error('Trial is not completed', correlation_id, status.HTTP_409_CONFLICT)
            if outcome == Outcome.SEND_FAILED:
                return _error('Message could not be sent', correlation_id, status.HTTP_502_BAD_GATEWAY)

            return Response(
                {'status': 'sent', 'trial_id': str(trial_id), 'correlation_id': correlation_id},
                status=status.HTTP_200_OK
            )

        except ParseError as e:
            logger.warning(f"Malformed JSON payload: {e}, correlation_id={correlation_id}")
            return _error('Malformed JSON', correlation_id, status.HTTP_400_BAD_REQUEST)
        except Exception as e:
            logger.error(f"Error sending album completion: {e}, correlation_id={correlation_id}", exc_info=True)
            return _error('Internal server error', correlation_id, status.HTTP_500_INTERNAL_SERVER_ERROR)
