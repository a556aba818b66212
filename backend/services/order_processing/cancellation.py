from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from services.order_processing_service import OrderProcessingEngine

logger = logging.getLogger("photobook-orders")

Completion = Callable[[], None]


class CancellationController:
    """Cooperative cancellation of the processing order.

    A request cancels every in-flight transfer and waits for the transfer
    session to acknowledge before the processing order is cleared, so a late
    upload completion cannot bring the order back. Pipeline stages poll
    ``is_pending`` and call ``finish()`` instead of continuing. Exactly one
    completion fires per cancellation: a request arriving while one is in
    flight replaces the stored completion.
    """

    def __init__(self, engine: "OrderProcessingEngine", transfers) -> None:
        self._engine = engine
        self._transfers = transfers
        self._pending = False
        self._finishing = False
        self._completion: Optional[Completion] = None
        self._acknowledged: Optional[asyncio.Future] = None
        self._done = asyncio.Event()

    @property
    def is_pending(self) -> bool:
        return self._pending

    async def cancel_processing(self, completion: Optional[Completion] = None) -> None:
        if not self._pending and not self._engine.is_processing_order:
            if completion is not None:
                completion()
            return

        if self._pending:
            self._completion = completion
            await self._done.wait()
            return

        logger.info("Cancelling order processing")
        self._pending = True
        self._completion = completion
        self._done = asyncio.Event()
        self._acknowledged = asyncio.ensure_future(self._transfers.cancel_all())
        await self.finish()

    async def finish(self) -> None:
        if not self._pending:
            return
        done = self._done
        if self._finishing:
            await done.wait()
            return
        self._finishing = True
        try:
            await self._acknowledged
        except Exception as exc:
            logger.exception("Cancelling uploads failed: %s", exc)

        await self._engine.clear_processing_order()
        completion, self._completion = self._completion, None
        self._pending = False
        self._finishing = False
        done.set()
        logger.info("Order processing cancelled")
        if completion is not None:
            completion()
