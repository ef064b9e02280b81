class WebPushError(Exception):
    """Base class for errors raised by the push engine."""


class ConfigurationError(WebPushError, ValueError):
    """Invalid process configuration. Fatal at startup."""


class VapidConfigError(ConfigurationError):
    """Missing or malformed VAPID subject or key material."""


class VapidSigningError(WebPushError):
    """The VAPID token could not be signed for one delivery."""


class InvalidPayloadError(WebPushError, ValueError):
    """The notification was rejected before any network call."""


class PayloadEncryptionError(WebPushError):
    """The payload could not be encrypted for one subscription."""
