import logging
from datetime import datetime, timezone
from typing import Optional

from repositories.order_repository import OrderRepository, OrderSlot
from schemas import Order

logger = logging.getLogger("photobook-orders")


class BasketService:
    """The order under edit. It lives as long as the app and is reset after a submission."""

    def __init__(self, store: OrderRepository) -> None:
        self.store = store
        self._basket: Optional[Order] = None

    def load(self) -> Order:
        if self._basket is None:
            self._basket = self.store.load(OrderSlot.BASKET) or Order()
        return self._basket

    def save(self, order: Order) -> Order:
        self._basket = order
        self.store.save(order, OrderSlot.BASKET)
        return order

    def reset(self) -> Order:
        self._basket = Order()
        self.store.clear(OrderSlot.BASKET)
        logger.info("Basket reset")
        return self._basket

    def checkout_copy(self, payment_token: Optional[str] = None) -> Order:
        basket = self.load()
        basket.last_submission_date = datetime.now(timezone.utc)
        if payment_token:
            basket.payment_token = payment_token
        self.save(basket)
        return basket.model_copy(deep=True)

    def mark_submitted(self) -> None:
        self.reset()
