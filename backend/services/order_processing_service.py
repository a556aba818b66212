import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from errors import OrderProcessingError
from repositories.order_repository import OrderRepository, OrderSlot
from schemas import Order

from services.order_processing.cancellation import CancellationController
from services.order_processing.constants import (
    DEFAULT_MAX_POLLS,
    DEFAULT_POLL_INTERVAL_SECONDS,
)
from services.order_processing.pipeline import OrderSubmissionPipeline
from services.order_processing.uploads import AssetUploadCoordinator

logger = logging.getLogger("photobook-orders")


class OrderProcessingDelegate:
    """Receives progress from the engine. Every hook is optional."""

    def upload_status_did_update(self) -> None:
        pass

    def order_will_finish(self) -> None:
        pass

    def order_did_complete(self, error: Optional[OrderProcessingError]) -> None:
        pass


class OrderProcessingEngine:
    """Owns the single processing order and drives it to a terminal state.

    Uploads are dispatched by the upload coordinator and resolved as the
    transfer session reports completions; once nothing is left to upload the
    submission pipeline generates artifacts, submits and polls. All state lives
    on the instance, which the application constructs once and shares.
    """

    def __init__(
        self,
        store: OrderRepository,
        transfers,
        asset_loader,
        artifact_generator,
        commerce,
        *,
        scratch_dir: Path,
        delegate: Optional[OrderProcessingDelegate] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_polls: int = DEFAULT_MAX_POLLS,
    ) -> None:
        self.store = store
        self.transfers = transfers
        self.delegate = delegate or OrderProcessingDelegate()
        self.lock = asyncio.Lock()
        self._store_lock = asyncio.Lock()
        self._order: Optional[Order] = None
        self._store_checked = False

        self.uploads = AssetUploadCoordinator(self, asset_loader, transfers, scratch_dir)
        self.pipeline = OrderSubmissionPipeline(
            self,
            artifact_generator,
            commerce,
            poll_interval=poll_interval,
            max_polls=max_polls,
        )
        self.cancellation = CancellationController(self, transfers)
        transfers.set_completion_handler(self.uploads.on_transfer_completed)

    @property
    def processing_order(self) -> Optional[Order]:
        if self._order is None and not self._store_checked:
            self._store_checked = True
            self._order = self.store.load(OrderSlot.PROCESSING)
            if self._order is not None:
                logger.info("Recovered processing order from %s", self.store.path_for(OrderSlot.PROCESSING))
        return self._order

    @property
    def is_processing_order(self) -> bool:
        return self.processing_order is not None

    async def start_processing(self, order: Order) -> bool:
        """Take ownership of a copy of ``order`` and start uploading its assets.

        Returns False without doing anything when an order is already processing.
        """
        if self.is_processing_order:
            logger.info("Order already processing; ignoring start request")
            return False
        processing = order.model_copy(deep=True)
        self._order = processing
        self._store_checked = True
        self.pipeline.reset()
        await self.save_processing_order()
        logger.info(
            "Started processing order with %s product(s), %s asset(s)",
            len(processing.products),
            len(processing.all_assets()),
        )
        if processing.remaining_assets_to_upload():
            await self.upload_assets()
        else:
            await self.finish_order()
        return True

    async def load_processing_order(self) -> bool:
        """Recover an interrupted run and reattach its in-flight uploads."""
        if self.processing_order is None:
            if self.transfers.references():
                logger.info("Dropping upload tasks left without a processing order")
                await self.transfers.cancel_all()
            return False
        await self.transfers.reattach()
        return True

    async def upload_assets(self) -> int:
        return await self.uploads.upload_assets()

    async def finish_order(self) -> None:
        await self.pipeline.run()

    async def cancel_processing(self, completion: Optional[Callable[[], None]] = None) -> None:
        await self.cancellation.cancel_processing(completion)

    async def retry(self) -> bool:
        order = self.processing_order
        if order is None or self.cancellation.is_pending:
            return False
        if order.remaining_assets_to_upload():
            await self.upload_assets()
        else:
            await self.finish_order()
        return True

    def has_pending_uploads(self) -> bool:
        return self.transfers.pending_task_count() > 0

    async def save_processing_order(self) -> None:
        async with self._store_lock:
            order = self._order
            if order is None:
                return
            snapshot = order.model_copy(deep=True)
            try:
                await asyncio.to_thread(self.store.save, snapshot, OrderSlot.PROCESSING)
            except OSError as exc:
                logger.error("Saving processing order failed: %s", exc)

    async def clear_processing_order(self) -> None:
        self._order = None
        self._store_checked = True
        self.pipeline.reset()
        async with self._store_lock:
            try:
                await asyncio.to_thread(self.store.clear, OrderSlot.PROCESSING)
            except OSError as exc:
                logger.error("Removing processing order failed: %s", exc)

    async def complete(self, order: Order) -> None:
        if self._order is not order:
            return
        await self.clear_processing_order()
        self.notify_complete(None)

    async def fail(self, order: Order, error: OrderProcessingError) -> None:
        if self._order is not order:
            return
        if error.discards_order:
            await self.clear_processing_order()
        self.notify_complete(error)

    async def handle_upload_failure(self, error: OrderProcessingError) -> None:
        if self.processing_order is None or self.cancellation.is_pending:
            logger.info("Ignoring upload failure after cancellation: %s", error)
            return
        self.notify_upload_status()
        if error.discards_order:
            logger.warning("Upload failure cancels the order: %s", error)
            await self.cancellation.cancel_processing(lambda: self.notify_complete(error))
            return
        self.notify_complete(error)

    def notify_upload_status(self) -> None:
        self.delegate.upload_status_did_update()

    def notify_will_finish(self) -> None:
        self.delegate.order_will_finish()

    def notify_complete(self, error: Optional[OrderProcessingError]) -> None:
        if error is None:
            logger.info("Order processing finished")
        else:
            logger.warning("Order processing stopped: %s (%s)", error.kind, error)
        self.delegate.order_did_complete(error)

    def status(self) -> Dict[str, Any]:
        order = self.processing_order
        return {
            "processing": order is not None,
            "cancelling": self.cancellation.is_pending,
            "stage": self.pipeline.stage.value if order is not None else None,
            "order_id": order.order_id if order is not None else None,
            "total_assets": len(order.all_assets()) if order is not None else 0,
            "remaining_assets": len(order.remaining_assets_to_upload()) if order is not None else 0,
            "pending_uploads": self.transfers.pending_task_count(),
        }


class ProcessingStatusTracker(OrderProcessingDelegate):
    """Delegate used by the HTTP surface: keeps the last outcome for status reads."""

    def __init__(self, basket_service=None) -> None:
        self._basket = basket_service
        self.finishing = False
        self.upload_updates = 0
        self.last_completed_at: Optional[datetime] = None
        self.last_error: Optional[OrderProcessingError] = None

    def order_did_start(self) -> None:
        self.finishing = False
        self.upload_updates = 0
        self.last_error = None

    def upload_status_did_update(self) -> None:
        self.upload_updates += 1

    def order_will_finish(self) -> None:
        self.finishing = True

    def order_did_complete(self, error: Optional[OrderProcessingError]) -> None:
        self.finishing = False
        self.last_completed_at = datetime.now(timezone.utc)
        self.last_error = error
        if error is None and self._basket is not None:
            self._basket.mark_submitted()

    def get_status(self) -> Dict[str, Any]:
        return {
            "finishing": self.finishing,
            "last_completed_at": self.last_completed_at,
            "last_error": self.last_error.to_dict() if self.last_error is not None else None,
        }
