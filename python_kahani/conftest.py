import os
import sys
from datetime import timedelta

import pytest
from django.core.files.storage import FileSystemStorage
from django.utils import timezone

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'story_gateway.settings')

TWILIO_MEDIA_URL = (
    'https://api.twilio.com/2010-04-01/Accounts/ACtest/Messages/MM{message}/Media/ME{media}'
)


@pytest.fixture(autouse=True)
def fast_retries(settings, tmp_path):
    """No real sleeping between retries and voice notes stored under tmp_path."""
    settings.GATEWAY_RETRY_BASE_DELAY = 0
    settings.GATEWAY_RETRY_MAX_ATTEMPTS = 3
    settings.MEDIA_ROOT = str(tmp_path / 'media')
    settings.WHATSAPP_BUSINESS_NUMBER = '919000000000'


@pytest.fixture
def fake_gateway():
    from trials.tests.fakes import FakeGateway
    return FakeGateway()


@pytest.fixture
def slept():
    return []


@pytest.fixture
def no_sleep_policy(slept):
    """Three attempts; records the delays it would have slept."""
    from trials.services.retry import RetryPolicy
    return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=slept.append)


@pytest.fixture
def tmp_storage(tmp_path):
    return FileSystemStorage(location=str(tmp_path / 'storage'))


@pytest.fixture
def now():
    return timezone.now()


@pytest.fixture
def media_url():
    def build(message='0001', media='0001'):
        return TWILIO_MEDIA_URL.format(message=message, media=media)
    return build


@pytest.fixture
def make_trial(db):
    """Create a FreeTrial; keyword arguments override the defaults."""
    from trials.models import FreeTrial

    def create(**overrides):
        values = {
            'customer_phone': '919811111111',
            'buyer_name': 'Aarav',
            'storyteller_name': 'Dadi',
            'selected_album': 'Childhood Stories',
        }
        values.update(overrides)
        return FreeTrial.objects.create(**values)
    return create


@pytest.fixture
def questioning_trial(make_trial, now):
    """A trial that has just been sent question 0."""
    from trials.models import FreeTrial
    return make_trial(
        storyteller_phone='919822222222',
        conversation_state=FreeTrial.ConversationState.QUESTIONING,
        current_question_index=0,
        last_readiness_response=FreeTrial.ReadinessResponse.AFFIRMATIVE,
        welcome_sent_at=now - timedelta(hours=1),
        readiness_asked_at=now - timedelta(hours=1),
        last_question_sent_at=now - timedelta(minutes=30),
        next_question_scheduled_for=now + timedelta(hours=23),
    )


@pytest.fixture
def valid_trial_payload():
    """Return a valid free trial request."""
    return {
        'customer_phone': '+91 98111 11111',
        'buyer_name': 'Aarav',
        'storyteller_name': 'Dadi',
        'selected_album': 'Childhood Stories',
    }


@pytest.fixture
def twilio_text_payload():
    def build(body, sid='SM0001', sender='whatsapp:+919822222222'):
        return {
            'MessageSid': sid,
            'From': sender,
            'To': 'whatsapp:+14155238886',
            'Body': body,
            'NumMedia': '0',
        }
    return build


@pytest.fixture
def twilio_voice_payload(media_url):
    def build(sid='MM0001', media='0001', sender='whatsapp:+919822222222', content_type='audio/ogg'):
        return {
            'MessageSid': sid,
            'From': sender,
            'To': 'whatsapp:+14155238886',
            'Body': '',
            'NumMedia': '1',
            'MediaUrl0': media_url(message=sid[2:], media=media),
            'MediaContentType0': content_type,
        }
    return build
