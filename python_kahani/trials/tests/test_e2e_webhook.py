"""
End-to-end tests for the WhatsApp webhook through to the conversation flow.
"""
from unittest.mock import patch

import pytest
from rest_framework.test import APIClient

from trials.models import FreeTrial, InboundMessage, VoiceNote
from trials.services import messages
from trials.services.state_machine import State
from trials.tasks import process_inbound_message
from trials.tests.fakes import FakeGateway

STORYTELLER = '919822222222'


@pytest.mark.django_db
class TestWebhookE2E:
    """Webhook -> task -> conversation, with the messaging provider faked."""

    def setup_method(self):
        self.client = APIClient()
        self.gateway = FakeGateway()

    def _run_task_sync(self, message_id: int) -> None:
        """Run the Celery task synchronously for tests."""
        process_inbound_message(message_id)

    def _post(self, payload):
        return self.client.post('/webhooks/whatsapp/', payload)

    def test_storyteller_journey_to_first_answer(self, make_trial, twilio_text_payload, twilio_voice_payload):
        trial = make_trial()

        with patch('trials.views.process_inbound_message.delay', side_effect=self._run_task_sync), \
                patch('trials.tasks.get_gateway', return_value=self.gateway):
            first = self._post(twilio_text_payload(messages.storyteller_first_message(trial), sid='SM1'))
            trial.refresh_from_db()
            assert trial.storyteller_phone == STORYTELLER
            assert trial.conversation_state == State.AWAITING_READINESS

            ready = self._post(twilio_text_payload('Yes', sid='SM2'))
            trial.refresh_from_db()
            assert trial.conversation_state == State.QUESTIONING

            voice_payload = twilio_voice_payload(sid='MM3', media='3')
            self.gateway.media[voice_payload['MediaUrl0']] = b'OggS-first-answer'
            answer = self._post(voice_payload)

        assert [r.status_code for r in (first, ready, answer)] == [200, 200, 200]
        trial.refresh_from_db()
        assert trial.current_question_index == 1
        note = VoiceNote.objects.get(free_trial=trial)
        assert note.question_index == 0
        assert note.download_status == VoiceNote.DownloadStatus.COMPLETED

        bodies = self.gateway.bodies_to(STORYTELLER)
        assert bodies[0] == messages.storyteller_onboarding(trial)
        assert bodies[1] == messages.readiness_check(trial)
        assert bodies[2] == messages.question(trial, 0)
        assert messages.voice_note_acknowledgment(trial) in bodies
        assert bodies[-1] == messages.question(trial, 1)
        assert set(InboundMessage.objects.values_list('status', flat=True)) == {InboundMessage.Status.PROCESSED}

    def test_redelivered_voice_note_is_stored_once(self, questioning_trial, twilio_voice_payload):
        payload = twilio_voice_payload(sid='MM9', media='9')
        self.gateway.media[payload['MediaUrl0']] = b'OggS-answer'

        with patch('trials.views.process_inbound_message.delay', side_effect=self._run_task_sync) as mock_delay, \
                patch('trials.tasks.get_gateway', return_value=self.gateway):
            first = self._post(payload)
            second = self._post(payload)

        assert first.data['status'] == 'accepted'
        assert second.data['status'] == 'duplicate'
        assert mock_delay.call_count == 1
        assert VoiceNote.objects.filter(free_trial=questioning_trial).count() == 1
        assert self.gateway.download_calls == 1
        questioning_trial.refresh_from_db()
        assert questioning_trial.current_question_index == 1

    def test_unknown_sender_is_ignored(self, db, twilio_text_payload):
        with patch('trials.views.process_inbound_message.delay', side_effect=self._run_task_sync), \
                patch('trials.tasks.get_gateway', return_value=self.gateway):
            response = self._post(twilio_text_payload('who is this?', sender='whatsapp:+919899999999'))

        message = InboundMessage.objects.get(pk=response.data['message_id'])
        assert message.status == InboundMessage.Status.IGNORED
        assert self.gateway.sent == []
        assert not FreeTrial.objects.exists()
