from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from commerce import normalize_status
from errors import (
    ArtifactGenerationError,
    OrderProcessingError,
    PaymentError,
    PollingExhaustedError,
)
from schemas import Order, Product

from .constants import (
    DEFAULT_MAX_POLLS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    IN_PROGRESS_STATUSES,
    PAYMENT_ERROR_STATUSES,
    SUCCESS_STATUSES,
)
from .parameters import build_order_parameters

if TYPE_CHECKING:
    from services.order_processing_service import OrderProcessingEngine

logger = logging.getLogger("photobook-orders")


class Stage(str, Enum):
    UPLOADING = "uploading"
    GENERATING_ARTIFACTS = "generating_artifacts"
    SUBMITTING = "submitting"
    POLLING = "polling"
    DONE = "done"


def initial_stage(order: Order) -> Stage:
    """Where a run over ``order`` starts, given what earlier runs already did."""
    if order.remaining_assets_to_upload():
        return Stage.UPLOADING
    if order.order_id:
        return Stage.POLLING
    if order.products and all(product.artifact_urls for product in order.products):
        return Stage.SUBMITTING
    return Stage.GENERATING_ARTIFACTS


class OrderSubmissionPipeline:
    def __init__(
        self,
        engine: "OrderProcessingEngine",
        artifact_generator,
        commerce,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_polls: int = DEFAULT_MAX_POLLS,
    ) -> None:
        self._engine = engine
        self._generator = artifact_generator
        self._commerce = commerce
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.stage = Stage.UPLOADING
        self.polls = 0
        # Only a second run over the same order is refused; a run left over
        # from a cancelled order drains on its own.
        self._running_order: Optional[Order] = None

    def reset(self) -> None:
        self.stage = Stage.UPLOADING
        self.polls = 0

    def _interrupted(self, order: Order) -> bool:
        return (
            self._engine.cancellation.is_pending
            or self._engine.processing_order is not order
        )

    async def run(self) -> None:
        engine = self._engine
        order = engine.processing_order
        if order is None or self._running_order is order:
            return
        stage = initial_stage(order)
        if stage is Stage.UPLOADING:
            logger.warning(
                "Cannot finish order: %s asset(s) still uploading",
                len(order.remaining_assets_to_upload()),
            )
            return

        self._running_order = order
        try:
            while True:
                if engine.cancellation.is_pending:
                    await engine.cancellation.finish()
                    return
                if engine.processing_order is not order:
                    return
                self.stage = stage
                if stage is Stage.DONE:
                    break
                try:
                    stage = await self._advance(stage, order)
                except OrderProcessingError as exc:
                    await self._fail(order, exc)
                    return
                except Exception as exc:
                    logger.exception("Order pipeline failed in %s: %s", stage.value, exc)
                    await self._fail(order, OrderProcessingError(str(exc)))
                    return
            logger.info("Order %s completed", order.order_id)
            await engine.complete(order)
        finally:
            if self._running_order is order:
                self._running_order = None

    async def _fail(self, order: Order, error: OrderProcessingError) -> None:
        if self._engine.cancellation.is_pending:
            await self._engine.cancellation.finish()
            return
        if self._engine.processing_order is not order:
            return
        logger.warning("Order pipeline stopped in %s: %s", self.stage.value, error)
        await self._engine.fail(order, error)

    async def _advance(self, stage: Stage, order: Order) -> Stage:
        if stage is Stage.GENERATING_ARTIFACTS:
            self._engine.notify_will_finish()
            await self._generate_artifacts(order)
            return Stage.SUBMITTING
        if stage is Stage.SUBMITTING:
            await self._submit(order)
            return Stage.POLLING
        if stage is Stage.POLLING:
            await self._poll(order)
            return Stage.DONE
        raise ValueError(f"No transition out of {stage.value}")

    async def _generate(self, product: Product) -> List[str]:
        try:
            urls = await self._generator.generate(product)
        except ArtifactGenerationError:
            raise
        except Exception as exc:
            raise ArtifactGenerationError(f"{product.template_id}: {exc}") from exc
        return list(urls or [])

    async def _generate_artifacts(self, order: Order) -> None:
        pending = [product for product in order.products if not product.artifact_urls]
        results = await asyncio.gather(
            *(self._generate(product) for product in pending), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        if self._interrupted(order):
            return
        for product, urls in zip(pending, results):
            product.artifact_urls = urls
        await self._engine.save_processing_order()

    async def _submit(self, order: Order) -> None:
        params = build_order_parameters(order)
        order_id = await self._commerce.submit_order(params)
        if self._interrupted(order):
            return
        order.order_id = order_id
        await self._engine.save_processing_order()

    async def _poll(self, order: Order) -> None:
        while not self._interrupted(order):
            if self.polls >= self.max_polls:
                raise PollingExhaustedError(f"No final status after {self.polls} checks")
            self.polls += 1
            result = await self._commerce.check_status(order.order_id)
            status = normalize_status(result.status)
            logger.info(
                "Order %s status=%s (check %s/%s)",
                order.order_id,
                result.status,
                self.polls,
                self.max_polls,
            )
            if status in SUCCESS_STATUSES:
                return
            if status in PAYMENT_ERROR_STATUSES:
                raise PaymentError(f"Order {order.order_id} payment failed")
            if status not in IN_PROGRESS_STATUSES:
                raise OrderProcessingError(f"Order {order.order_id} ended with status {result.status}")
            await asyncio.sleep(self.poll_interval)
