"""
Typed failures raised while an order moves through processing.

Each error carries a user-facing ``message`` plus two flags the engine uses
to decide what happens to the processing order:

- ``recoverable``: the UI may offer "try again" (the caller re-invokes retry)
- ``discards_order``: the processing order is cleared after reporting
"""
from __future__ import annotations

from typing import Optional


class OrderProcessingError(Exception):
    message = "Something went wrong and your order could not be placed."
    recoverable = False
    discards_order = True

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.message)
        self.detail = detail

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "detail": self.detail,
            "recoverable": self.recoverable,
        }


class DiskError(OrderProcessingError):
    message = "A photo could not be prepared for upload. Free up some space and try again later."
    discards_order = False


class LoadError(OrderProcessingError):
    message = "One of your photos could not be read. Your order has been cancelled."


class UnsupportedFormatError(LoadError):
    message = "One of your photos is in a format we can't print. Your order has been cancelled."


class TransportError(OrderProcessingError):
    message = "We couldn't reach our servers. Please check your connection and try again."
    recoverable = True
    discards_order = False

    def __init__(self, detail: str = "", *, code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.code = code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["code"] = self.code
        return data


class ParsingError(OrderProcessingError):
    message = "We received an unexpected response and your order could not be placed."


class ParameterError(ParsingError):
    message = "Your order is missing some details and could not be placed."


class ArtifactGenerationError(OrderProcessingError):
    message = "Your photobook could not be prepared for printing."


class PaymentError(OrderProcessingError):
    message = "Your payment was declined. Please choose another payment method."


class PollingExhaustedError(OrderProcessingError):
    message = "We couldn't confirm your order in time. Please contact support."
