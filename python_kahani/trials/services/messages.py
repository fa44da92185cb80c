"""
Outbound message copy.
"""
from urllib.parse import quote

from django.conf import settings


def get_questions() -> list:
    return list(settings.STORY_QUESTIONS)


def question_text(index: int) -> str:
    return get_questions()[index]


def free_trial_confirmation(trial) -> str:
    return (
        f"Hi {trial.buyer_name}, Thank you for choosing {settings.STORY_BRAND_NAME}. "
        f"You and {trial.storyteller_name} are about to start something truly special. "
        f"Their {settings.STORY_BRAND_NAME} will soon always stay with you. "
        f"To confirm, you would like a mini album on \"{trial.selected_album}\" for "
        f"{trial.storyteller_name}, right? If this looks different, please reply and let us know. "
        f"To get started, you will get a short message to forward to {trial.storyteller_name}. "
        f"They just need to click the link and send the pre-filled message - that's it."
    )


def storyteller_first_message(trial) -> str:
    """Prefilled text the storyteller sends us; it carries the trial id."""
    return f"Hi, {trial.buyer_name} has placed an order {trial.id} for me."


def shareable_link(trial) -> str:
    prefilled = quote(storyteller_first_message(trial))
    whatsapp_link = f"https://wa.me/{settings.WHATSAPP_BUSINESS_NUMBER}?text={prefilled}"
    return (
        f"Please share this link with *{trial.storyteller_name}*:\n\n"
        f"{whatsapp_link}\n\n"
        f"When {trial.storyteller_name} opens this link, they'll be able to start "
        f"chatting with us directly on WhatsApp!"
    )


def storyteller_onboarding(trial) -> str:
    return (
        f"Hi {trial.storyteller_name}, I am {settings.STORY_AGENT_NAME} from {settings.STORY_BRAND_NAME}. "
        f"{trial.buyer_name} has asked me to record your stories in your own voice. "
        f"Every day, I'll send you one simple question. You can reply with a voice note "
        f"whenever you wish. Your stories will become a beautiful book your family can keep "
        f"forever. Please pin this chat for us to get started on this journey!"
    )


def readiness_check(trial) -> str:
    return f"Hi {trial.storyteller_name}, are you ready to share your {settings.STORY_BRAND_NAME}?"


def question(trial, index: int) -> str:
    total = len(get_questions())
    return (
        f"Question {index + 1} of {total}:\n\n{question_text(index)}\n\n"
        f"Reply with a voice note whenever you are ready."
    )


def reminder(trial, index: int) -> str:
    return (
        f"Hi {trial.storyteller_name}, just a gentle reminder. We would love to hear your answer:\n\n"
        f"{question_text(index)}\n\n"
        f"Send a voice note whenever it suits you."
    )


def voice_note_acknowledgment(trial) -> str:
    return (
        "Thank you for sharing your story! It's been saved and recorded safely. "
        "We will send you the next question very soon."
    )


def album_completion(trial, playlist_album_link: str, vinyl_album_link: str) -> str:
    return (
        f"Here's your mini album:\n\nPlaylist Album: {playlist_album_link}\n\n"
        f"Vinyl Album: {vinyl_album_link}\n\n"
        f"A short glimpse of the memories you've shared so far."
    )
