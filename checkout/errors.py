"""Error taxonomy for the checkout service.

Every error carries the HTTP status it is surfaced with and a message that is
safe to show to the end user.
"""

import re

# Stripe secret keys, restricted keys and webhook signing secrets
_SECRET_PATTERN = re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+|\bwhsec_[A-Za-z0-9]+")


def scrub_secrets(message: str) -> str:
    """Replace anything that looks like secret key material."""
    return _SECRET_PATTERN.sub("[redacted]", message)


class CheckoutError(Exception):
    """Base exception for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(CheckoutError):
    """Client-caused validation failure. Never reaches the processor."""

    status_code = 400


class InvalidPayload(InvalidArgument):
    """A verified webhook body that is not a well-formed event."""


class SignatureInvalid(CheckoutError):
    """
    Webhook authentication failure.

    Returned as 400 so the processor does not keep re-delivering a payload
    that will never verify.
    """

    status_code = 400


class NotFound(CheckoutError):
    status_code = 404


class UpstreamError(CheckoutError):
    """Processor-side failure. The processor's message is forwarded, scrubbed."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(scrub_secrets(message))


class WebhookHandlingError(CheckoutError):
    """
    Transient failure while handling a verified event.

    Surfaced as 500 so the processor's retry mechanism re-delivers the event.
    """

    status_code = 500
