"""Webhook delivery exceptions."""

from typing import Any


class WebhookError(Exception):
    """Base webhook error; callers catch this for any delivery-store failure."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or "WEBHOOK_ERROR"
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message, "context": self.context}


class WebhookDeliveryNotFoundError(WebhookError):
    """Delivery record does not exist."""

    def __init__(self, delivery_id: str) -> None:
        super().__init__(
            f"Webhook delivery {delivery_id} not found",
            "WEBHOOK_DELIVERY_NOT_FOUND",
            context={"delivery_id": delivery_id},
        )


__all__ = ["WebhookDeliveryNotFoundError", "WebhookError"]
