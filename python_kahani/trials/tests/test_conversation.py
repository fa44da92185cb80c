"""
Tests for conversation orchestration: onboarding, readiness, questioning.
"""
from datetime import timedelta

import pytest

from trials.models import FreeTrial, VoiceNote
from trials.services import conversation, messages
from trials.services.gateway import MediaRef, SendResult, SendStatus
from trials.services.ingestion import IngestionStatus
from trials.services.scheduler import run_tick
from trials.services.state_machine import Outcome, State

STORYTELLER = '919822222222'


@pytest.fixture
def new_trial(make_trial):
    return make_trial()


@pytest.fixture
def readiness_trial(make_trial, now):
    """Welcome and readiness check already sent."""
    return make_trial(
        storyteller_phone=STORYTELLER,
        conversation_state=State.AWAITING_READINESS,
        welcome_sent_at=now - timedelta(minutes=5),
        readiness_asked_at=now - timedelta(minutes=5),
        retry_readiness_at=now + timedelta(hours=6),
    )


@pytest.mark.django_db
class TestOnboarding:
    """Buyer onboarding and first storyteller contact."""

    def test_onboard_buyer_sends_confirmation_and_link(self, new_trial, fake_gateway):
        assert conversation.onboard_buyer(new_trial, fake_gateway) is True

        bodies = fake_gateway.bodies_to(new_trial.customer_phone)
        assert len(bodies) == 2
        assert 'Childhood Stories' in bodies[0]
        assert 'https://wa.me/919000000000?text=' in bodies[1]
        assert str(new_trial.id) in bodies[1]
        new_trial.refresh_from_db()
        assert new_trial.conversation_state == State.AWAITING_INITIAL_CONTACT

    def test_onboard_buyer_reports_failure(self, new_trial, fake_gateway):
        fake_gateway.fail_sends(SendStatus.PERMANENT_ERROR)
        assert conversation.onboard_buyer(new_trial, fake_gateway) is False
        assert len(fake_gateway.sent) == 1

    def test_first_message_welcomes_and_asks_readiness(self, new_trial, fake_gateway, now):
        """'hi' from the storyteller -> awaiting_readiness, welcome + readiness sent."""
        outcome = conversation.handle_inbound_text(
            new_trial.id, 'whatsapp:+919822222222', 'hi', fake_gateway, now=now
        )

        assert outcome == Outcome.SENT
        new_trial.refresh_from_db()
        assert new_trial.conversation_state == State.AWAITING_READINESS
        assert new_trial.storyteller_phone == STORYTELLER
        assert new_trial.welcome_sent_at == now
        assert new_trial.readiness_asked_at == now
        assert new_trial.retry_readiness_at > now
        assert fake_gateway.sent == [
            (STORYTELLER, messages.storyteller_onboarding(new_trial)),
            (STORYTELLER, messages.readiness_check(new_trial)),
        ]

    def test_welcome_failure_leaves_state(self, new_trial, fake_gateway, now):
        fake_gateway.fail_sends(SendStatus.PERMANENT_ERROR)

        outcome = conversation.handle_inbound_text(new_trial.id, STORYTELLER, 'hi', fake_gateway, now=now)

        assert outcome == Outcome.SEND_FAILED
        new_trial.refresh_from_db()
        assert new_trial.conversation_state == State.AWAITING_INITIAL_CONTACT
        assert new_trial.welcome_sent_at is None
        assert new_trial.storyteller_phone == STORYTELLER
        assert new_trial.retry_readiness_at is None

    def test_failed_welcome_is_sent_by_next_tick(self, new_trial, fake_gateway, now):
        fake_gateway.fail_sends(SendStatus.TRANSIENT_ERROR, times=3)
        conversation.handle_inbound_text(new_trial.id, STORYTELLER, 'hi', fake_gateway, now=now)
        assert fake_gateway.sent and all(to == STORYTELLER for to, _ in fake_gateway.sent)
        fake_gateway.sent.clear()

        summary = run_tick(gateway=fake_gateway, now=now + timedelta(minutes=1))

        assert summary['welcomes_sent'] == 1
        new_trial.refresh_from_db()
        assert new_trial.conversation_state == State.AWAITING_READINESS
        assert new_trial.welcome_sent_at == now + timedelta(minutes=1)
        assert fake_gateway.sent == [
            (STORYTELLER, messages.storyteller_onboarding(new_trial)),
            (STORYTELLER, messages.readiness_check(new_trial)),
        ]

    def test_welcome_in_flight_is_not_sent_twice(self, new_trial, now):
        FreeTrial.objects.filter(pk=new_trial.pk).update(storyteller_phone=STORYTELLER)
        ticks = []

        class TickingGateway:
            sent = []

            def send_text(self, recipient, body):
                self.sent.append(body)
                if len(ticks) == 0:
                    ticks.append(run_tick(gateway=self, now=now))
                return SendResult(SendStatus.OK, message_id='SM1')

        gateway = TickingGateway()
        conversation.start_conversation(new_trial.id, gateway, now=now)

        assert ticks[0]['welcomes_sent'] == 0
        assert gateway.sent.count(messages.storyteller_onboarding(new_trial)) == 1

    def test_readiness_failure_stays_welcome_sent(self, new_trial, fake_gateway, now):
        fake_gateway.send_results.extend([
            SendResult(SendStatus.OK, message_id='SM1'),
            SendResult(SendStatus.PERMANENT_ERROR, error='blocked'),
        ])

        outcome = conversation.handle_inbound_text(new_trial.id, STORYTELLER, 'hi', fake_gateway, now=now)

        assert outcome == Outcome.SEND_FAILED
        new_trial.refresh_from_db()
        assert new_trial.conversation_state == State.WELCOME_SENT
        assert new_trial.readiness_asked_at is None
        assert new_trial.retry_readiness_at is None


@pytest.mark.django_db
class TestReadiness:
    """Replies to the readiness check."""

    def test_yes_starts_questioning(self, readiness_trial, fake_gateway, now):
        outcome = conversation.handle_inbound_text(readiness_trial.id, STORYTELLER, 'Yes!', fake_gateway, now=now)

        assert outcome == Outcome.SENT
        readiness_trial.refresh_from_db()
        assert readiness_trial.conversation_state == State.QUESTIONING
        assert readiness_trial.current_question_index == 0
        assert readiness_trial.last_question_sent_at == now
        assert readiness_trial.next_question_scheduled_for > now
        assert readiness_trial.retry_readiness_at is None
        assert fake_gateway.sent == [(STORYTELLER, messages.question(readiness_trial, 0))]

    def test_negative_reply_schedules_retry(self, readiness_trial, fake_gateway, now):
        outcome = conversation.handle_inbound_text(readiness_trial.id, STORYTELLER, 'not now', fake_gateway, now=now)

        assert outcome == Outcome.RETRY_SCHEDULED
        readiness_trial.refresh_from_db()
        assert readiness_trial.conversation_state == State.AWAITING_READINESS
        assert readiness_trial.retry_count == 1
        assert readiness_trial.last_readiness_response == FreeTrial.ReadinessResponse.NEGATIVE
        assert readiness_trial.retry_readiness_at > now
        assert fake_gateway.sent == []

    def test_repeated_misses_stall(self, readiness_trial, fake_gateway, now, settings):
        settings.MAX_READINESS_RETRIES = 3
        replies = ['no', 'hmm', 'later']
        outcomes = [
            conversation.handle_inbound_text(readiness_trial.id, STORYTELLER, reply, fake_gateway, now=now)
            for reply in replies
        ]

        assert outcomes == [Outcome.RETRY_SCHEDULED, Outcome.RETRY_SCHEDULED, Outcome.STALLED]
        readiness_trial.refresh_from_db()
        assert readiness_trial.conversation_state == State.STALLED
        assert readiness_trial.retry_readiness_at is None

    def test_stalled_trial_ignores_yes(self, readiness_trial, fake_gateway, now):
        FreeTrial.objects.filter(pk=readiness_trial.pk).update(conversation_state=State.STALLED)
        outcome = conversation.handle_inbound_text(readiness_trial.id, STORYTELLER, 'yes', fake_gateway, now=now)
        assert outcome == Outcome.NO_OP
        assert fake_gateway.sent == []

    def test_first_question_send_failure_keeps_waiting(self, readiness_trial, fake_gateway, now):
        fake_gateway.fail_sends(SendStatus.PERMANENT_ERROR)
        outcome = conversation.handle_inbound_text(readiness_trial.id, STORYTELLER, 'yes', fake_gateway, now=now)

        assert outcome == Outcome.SEND_FAILED
        readiness_trial.refresh_from_db()
        assert readiness_trial.conversation_state == State.AWAITING_READINESS
        assert readiness_trial.last_question_sent_at is None
        assert readiness_trial.last_readiness_response == FreeTrial.ReadinessResponse.AFFIRMATIVE
        assert readiness_trial.retry_readiness_at == now

    def test_failed_first_question_is_retried_by_next_tick(self, readiness_trial, fake_gateway, now, settings):
        settings.MAX_READINESS_RETRIES = 1
        fake_gateway.fail_sends(SendStatus.TRANSIENT_ERROR, times=3)
        conversation.handle_inbound_text(readiness_trial.id, STORYTELLER, 'yes', fake_gateway, now=now)
        fake_gateway.sent.clear()

        summary = run_tick(gateway=fake_gateway, now=now + timedelta(hours=7))

        assert summary['questions_sent'] == 1
        assert summary['readiness_sent'] == 0
        readiness_trial.refresh_from_db()
        assert readiness_trial.conversation_state == State.QUESTIONING
        assert readiness_trial.retry_count == 0
        assert fake_gateway.sent == [(STORYTELLER, messages.question(readiness_trial, 0))]

    def test_repeated_first_question_failures_never_stall(self, readiness_trial, fake_gateway, now, settings):
        settings.MAX_READINESS_RETRIES = 1
        fake_gateway.fail_sends(SendStatus.PERMANENT_ERROR, times=4)
        conversation.handle_inbound_text(readiness_trial.id, STORYTELLER, 'yes', fake_gateway, now=now)

        for minutes in (1, 2, 3):
            run_tick(gateway=fake_gateway, now=now + timedelta(minutes=minutes))

        readiness_trial.refresh_from_db()
        assert readiness_trial.conversation_state == State.AWAITING_READINESS
        assert readiness_trial.retry_count == 0
        bodies = fake_gateway.bodies_to(STORYTELLER)
        assert set(bodies) == {messages.question(readiness_trial, 0)}


@pytest.mark.django_db
class TestVoiceNotes:
    """Answers to questions."""

    @pytest.fixture
    def voice(self, fake_gateway, media_url):
        url = media_url(message='A1', media='B1')
        fake_gateway.media[url] = b'OggS' + b'\x00' * 64
        return MediaRef.from_url(url, 'audio/ogg')

    def test_answer_advances_and_sends_next_question(
        self, questioning_trial, fake_gateway, voice, tmp_storage, no_sleep_policy, now
    ):
        result = conversation.handle_voice_note(
            questioning_trial.id, 0, voice, fake_gateway,
            storage=tmp_storage, retry_policy=no_sleep_policy, now=now,
        )

        assert result.status == IngestionStatus.COMPLETED
        assert result.outcome == Outcome.ADVANCED
        note = VoiceNote.objects.get(free_trial=questioning_trial, question_index=0)
        assert note.download_status == VoiceNote.DownloadStatus.COMPLETED
        assert tmp_storage.exists(note.local_file_path)

        questioning_trial.refresh_from_db()
        assert questioning_trial.current_question_index == 1
        assert questioning_trial.last_question_sent_at == now
        assert fake_gateway.bodies_to(STORYTELLER) == [
            messages.voice_note_acknowledgment(questioning_trial),
            messages.question(questioning_trial, 1),
        ]

    def test_same_note_twice_advances_once(
        self, questioning_trial, fake_gateway, voice, tmp_storage, no_sleep_policy, now
    ):
        first = conversation.handle_voice_note(
            questioning_trial.id, 0, voice, fake_gateway,
            storage=tmp_storage, retry_policy=no_sleep_policy, now=now,
        )
        second = conversation.handle_voice_note(
            questioning_trial.id, 0, voice, fake_gateway,
            storage=tmp_storage, retry_policy=no_sleep_policy, now=now,
        )

        assert first.status == IngestionStatus.COMPLETED
        assert second.status == IngestionStatus.DUPLICATE
        assert VoiceNote.objects.filter(free_trial=questioning_trial).count() == 1
        questioning_trial.refresh_from_db()
        assert questioning_trial.current_question_index == 1
        assert len(fake_gateway.sent) == 2

    def test_delayed_next_question_left_to_scheduler(
        self, questioning_trial, fake_gateway, voice, tmp_storage, no_sleep_policy, now, settings
    ):
        settings.NEXT_QUESTION_DELAY_SECONDS = 3600

        conversation.handle_voice_note(
            questioning_trial.id, 0, voice, fake_gateway,
            storage=tmp_storage, retry_policy=no_sleep_policy, now=now,
        )

        questioning_trial.refresh_from_db()
        assert questioning_trial.last_question_sent_at is None
        assert questioning_trial.next_question_scheduled_for == now + timedelta(hours=1)
        assert fake_gateway.bodies_to(STORYTELLER) == [messages.voice_note_acknowledgment(questioning_trial)]

    def test_last_answer_completes_trial(
        self, questioning_trial, fake_gateway, voice, tmp_storage, no_sleep_policy, now, settings
    ):
        last = len(settings.STORY_QUESTIONS) - 1
        FreeTrial.objects.filter(pk=questioning_trial.pk).update(current_question_index=last)

        result = conversation.handle_voice_note(
            questioning_trial.id, last, voice, fake_gateway,
            storage=tmp_storage, retry_policy=no_sleep_policy, now=now,
        )

        assert result.outcome == Outcome.COMPLETED
        questioning_trial.refresh_from_db()
        assert questioning_trial.conversation_state == State.COMPLETED
        assert questioning_trial.next_question_scheduled_for is None
        assert fake_gateway.bodies_to(STORYTELLER) == [messages.voice_note_acknowledgment(questioning_trial)]


@pytest.mark.django_db
class TestRemindersAndRaces:

    def test_text_after_reminder_resumes_questioning(self, questioning_trial, fake_gateway, now):
        FreeTrial.objects.filter(pk=questioning_trial.pk).update(conversation_state=State.REMINDER_SENT)

        outcome = conversation.handle_inbound_text(questioning_trial.id, STORYTELLER, 'ok', fake_gateway, now=now)

        assert outcome == Outcome.RESUMED
        questioning_trial.refresh_from_db()
        assert questioning_trial.conversation_state == State.QUESTIONING
        assert fake_gateway.sent == []

    def test_reminder_not_applied_when_trial_moved_during_send(self, questioning_trial, now):
        """An answer landing mid-send wins; the reminder is not recorded."""
        FreeTrial.objects.filter(pk=questioning_trial.pk).update(next_question_scheduled_for=now)

        class AnswerDuringSend:
            def send_text(self, recipient, body):
                FreeTrial.objects.filter(pk=questioning_trial.pk).update(current_question_index=1)
                return SendResult(SendStatus.OK, message_id='SM1')

        outcome = conversation.send_reminder(questioning_trial.id, AnswerDuringSend(), now=now)

        assert outcome == Outcome.NO_OP
        questioning_trial.refresh_from_db()
        assert questioning_trial.conversation_state == State.QUESTIONING
        assert questioning_trial.reminder_sent_at is None
        assert questioning_trial.retry_count == 0


@pytest.mark.django_db
class TestAlbumCompletion:

    def test_sent_for_completed_trial(self, make_trial, fake_gateway):
        trial = make_trial(storyteller_phone=STORYTELLER, conversation_state=State.COMPLETED)

        outcome = conversation.send_album_completion(
            trial.id, 'https://music.example/p/1', 'https://music.example/v/1', fake_gateway
        )

        assert outcome == Outcome.SENT
        (recipient, body), = fake_gateway.sent
        assert recipient == STORYTELLER
        assert 'https://music.example/p/1' in body
        assert 'https://music.example/v/1' in body

    def test_not_sent_before_completion(self, questioning_trial, fake_gateway):
        outcome = conversation.send_album_completion(questioning_trial.id, 'p', 'v', fake_gateway)
        assert outcome == Outcome.NO_OP
        assert fake_gateway.sent == []
