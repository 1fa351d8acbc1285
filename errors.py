# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Errors
Exception types raised by the token, store and delivery layers.
"""


class A365Error(Exception):
    """Base class for all channel errors."""

    retryable = False


class ConfigurationMissing(A365Error):
    """A required credential or configuration field is absent."""

    def __init__(self, missing_fields: list[str], feature: str = "a365"):
        self.missing_fields = list(missing_fields)
        self.feature = feature
        fields = ", ".join(self.missing_fields) or "unknown"
        super().__init__(f"{feature} is not configured (missing: {fields})")


class TokenAcquisitionFailed(A365Error):
    """
    A tier of the token exchange returned a non-success response.

    Attributes:
        tier: One of "callback", "T1", "T2", "Agent"
        status: HTTP status code, or None if the request never completed
        body: Raw response body from the provider
        error: Provider ``error`` code when the body was JSON
        error_description: Provider ``error_description`` when the body was JSON
    """

    retryable = True

    def __init__(
        self,
        tier: str,
        status: int | None,
        body: str = "",
        error: str | None = None,
        error_description: str | None = None,
        scope: str | None = None,
    ):
        self.tier = tier
        self.status = status
        self.body = body
        self.error = error
        self.error_description = error_description
        self.scope = scope
        detail = error_description or body or "no response body"
        scope_part = f" (scope={scope})" if scope else ""
        super().__init__(f"{tier} token request failed{scope_part}: {status} {detail}")


class DeliveryTargetUnresolved(A365Error):
    """Neither a conversation id nor a service URL could be determined."""

    def __init__(self, target: str | None):
        self.target = target
        super().__init__(
            "No stored conversation reference"
            + (f" for {target!r}" if target else "")
            + ". The recipient must message the agent first."
        )


class TransportSendFailed(A365Error):
    """The messaging transport rejected an outbound activity."""

    retryable = True

    def __init__(self, status: int | None, detail: str):
        self.status = status
        self.detail = detail
        super().__init__(f"Send failed: {status} {detail}")


class InvalidConversationReference(A365Error, ValueError):
    """A conversation reference is missing fields required for delivery."""
