from abc import ABC, abstractmethod


class EmailDelivery(ABC):
    """Outbound email provider used by the send_email step."""

    @abstractmethod
    def send(
        self,
        to: str,
        from_email: str,
        from_name: str,
        subject: str,
        html: str,
        to_name: str | None = None,
        custom_args: dict | None = None,
    ) -> str:
        """Send one message and return the provider's message id.

        Raises:
            DeliveryError: when the provider rejects the message or cannot be
                reached.
        """
        raise NotImplementedError
