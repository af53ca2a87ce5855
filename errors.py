"""
Error kinds raised inside the bot. None of them is fatal to the process:
they are caught at the boundary of the event that raised them.
"""


class FoodBotError(Exception):
    """Base class for every error raised by the bot."""


class ConfigurationMissing(FoodBotError):
    """A required credential is absent."""


class TransportFailure(FoodBotError):
    """Network error, timeout or non-2xx answer on an outbound call."""


class MalformedResponse(TransportFailure):
    """A remote service answered with a body we could not interpret."""


class RecognitionUnavailable(FoodBotError):
    """The backend ran but found nothing usable in the image."""


class DeliveryFailure(FoodBotError):
    """A reply or push message could not be delivered."""


class ReplyTokenConsumed(DeliveryFailure):
    """The reply token was already used for an earlier reply."""
