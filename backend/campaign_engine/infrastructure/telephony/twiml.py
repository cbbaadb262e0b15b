"""
TwiML builders for the call conversation webhooks
"""
from twilio.twiml.voice_response import VoiceResponse, Gather

DEFAULT_VOICE = "Polly.Joanna"
DEFAULT_GATHER_TIMEOUT = 5


def say_and_gather(
    text: str,
    action_url: str,
    prompt: str,
    voice: str = DEFAULT_VOICE,
    timeout: int = DEFAULT_GATHER_TIMEOUT
) -> str:
    """Speak a line, then collect the caller's next utterance into action_url."""
    response = VoiceResponse()
    response.say(text, voice=voice)

    gather = Gather(input="speech", action=action_url, method="POST", timeout=timeout)
    gather.say(prompt, voice=voice)
    response.append(gather)

    return str(response)


def say_and_hangup(text: str, voice: str = DEFAULT_VOICE) -> str:
    response = VoiceResponse()
    response.say(text, voice=voice)
    response.hangup()
    return str(response)


def empty_response() -> str:
    """Acknowledgement for status/recording callbacks."""
    return str(VoiceResponse())
