"""
Order processing engine: uploads, submission pipeline, cancellation, recovery.
"""

import asyncio

import pytest

from errors import (
    ArtifactGenerationError,
    DiskError,
    LoadError,
    OrderProcessingError,
    ParameterError,
    PaymentError,
    PollingExhaustedError,
    TransportError,
)
from fakes import (
    BlockingArtifactGenerator,
    BlockingCommerce,
    FakeArtifactGenerator,
    FakeAssetLoader,
    FakeCommerce,
    FakeTransfers,
    make_asset,
    make_order,
)
from repositories.order_repository import OrderSlot
from services.order_processing.constants import reference_for
from services.order_processing.pipeline import Stage
from transfers import TransferEvent


def uploaded_order():
    return make_order([make_asset("a", uploaded=True)], [make_asset("b", uploaded=True)])


# ============================================================================
# Starting and uploading
# ============================================================================


class TestStartProcessing:

    @pytest.mark.asyncio
    async def test_persists_a_copy_and_uploads_unique_assets(self, engine, transfers, store):
        basket = make_order([make_asset("a"), make_asset("b")], [make_asset("b")])

        assert await engine.start_processing(basket) is True

        assert engine.processing_order is not basket
        assert store.path_for(OrderSlot.PROCESSING).exists()
        assert sorted(ref for _, _, ref in transfers.uploads) == [
            reference_for("a"),
            reference_for("b"),
        ]
        for _, path, _ in transfers.uploads:
            assert path.exists()
            assert path.suffix == ".jpg"

    @pytest.mark.asyncio
    async def test_second_start_is_a_no_op(self, engine, transfers):
        await engine.start_processing(make_order([make_asset("a")]))

        assert await engine.start_processing(make_order([make_asset("z")])) is False
        assert [ref for _, _, ref in transfers.uploads] == [reference_for("a")]

    @pytest.mark.asyncio
    async def test_only_missing_assets_are_uploaded(self, engine, transfers, loader):
        order = make_order([make_asset("a", uploaded=True), make_asset("b")], [make_asset("c")])

        await engine.start_processing(order)

        assert sorted(loader.calls) == ["b", "c"]
        assert await engine.upload_assets() == 0
        assert len(transfers.uploads) == 2

    @pytest.mark.asyncio
    async def test_upload_again_after_partial_run(self, engine, transfers, loader):
        await engine.start_processing(make_order([make_asset("a"), make_asset("b")]))
        await transfers.complete("a")
        await transfers.complete("b", error=TransportError("offline"))

        assert await engine.upload_assets() == 1
        assert loader.calls.count("a") == 1
        assert loader.calls.count("b") == 2


class TestUploadCompletion:

    @pytest.mark.asyncio
    async def test_shared_identifier_marks_every_asset(self, engine, transfers):
        await engine.start_processing(
            make_order([make_asset("a"), make_asset("b")], [make_asset("b"), make_asset("c")])
        )

        await transfers.complete("b", url="https://images.example/b-full.jpg")

        order = engine.processing_order
        urls = [asset.upload_url for asset in order.all_assets() if asset.identifier == "b"]
        assert urls == ["https://images.example/b-full.jpg"] * 2
        assert len(order.remaining_assets_to_upload()) == 2

    @pytest.mark.asyncio
    async def test_upload_url_is_persisted_immediately(self, engine, transfers, store):
        await engine.start_processing(make_order([make_asset("a"), make_asset("b")]))

        await transfers.complete("a")

        saved = store.load(OrderSlot.PROCESSING)
        assert [asset.upload_url is not None for asset in saved.all_assets()] == [True, False]

    @pytest.mark.asyncio
    async def test_remaining_count_never_grows(self, engine, transfers):
        await engine.start_processing(make_order([make_asset("a"), make_asset("b"), make_asset("c")]))
        remaining = [len(engine.processing_order.remaining_assets_to_upload())]
        task_b = transfers.task_for("b")

        await transfers.complete("b")
        remaining.append(len(engine.processing_order.remaining_assets_to_upload()))
        await transfers.deliver(
            TransferEvent(task_id=task_b, reference=reference_for("b"), response={"full": "https://x/b"})
        )
        remaining.append(len(engine.processing_order.remaining_assets_to_upload()))
        await transfers.complete("a")
        remaining.append(len(engine.processing_order.remaining_assets_to_upload()))

        assert remaining == [3, 2, 2, 1]

    @pytest.mark.asyncio
    async def test_duplicate_completion_does_not_notify_twice(self, engine, transfers, delegate):
        await engine.start_processing(make_order([make_asset("a"), make_asset("b")]))
        task_a = transfers.task_for("a")

        await transfers.complete("a")
        await transfers.deliver(
            TransferEvent(task_id=task_a, reference=reference_for("a"), response={"full": "https://x/a"})
        )

        assert delegate.events == ["upload"]
        assert engine.processing_order.all_assets()[0].upload_url == "https://images.example/a.jpg"

    @pytest.mark.asyncio
    async def test_foreign_reference_is_ignored(self, engine, transfers, delegate):
        await engine.start_processing(make_order([make_asset("a")]))

        await transfers.deliver(
            TransferEvent(task_id=99, reference="avatar-upload:me", response={"full": "https://x"})
        )

        assert delegate.events == []
        assert engine.is_processing_order

    @pytest.mark.asyncio
    async def test_missing_url_is_a_parsing_failure(self, engine, transfers, delegate):
        await engine.start_processing(make_order([make_asset("a")]))
        task_a = transfers.task_for("a")

        await transfers.deliver(TransferEvent(task_id=task_a, reference=reference_for("a"), response={}))

        assert delegate.events == ["upload", "complete"]
        assert delegate.completions[0].kind == "ParsingError"
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_unknown_asset_cancels_the_order(self, engine, transfers, delegate):
        await engine.start_processing(make_order([make_asset("a")]))

        await transfers.deliver(
            TransferEvent(task_id=42, reference=reference_for("ghost"), response={"full": "https://x"})
        )

        assert isinstance(delegate.completions[0], LoadError)
        assert delegate.events == ["upload", "complete"]
        assert not engine.is_processing_order


class TestUploadFailures:

    @pytest.mark.asyncio
    async def test_load_error_cancels_whole_order(self, make_engine, transfers, delegate):
        engine = make_engine(transfers, asset_loader=FakeAssetLoader({"b": LoadError("gone")}))

        await engine.start_processing(make_order([make_asset("a"), make_asset("b")]))

        assert transfers.cancel_calls == 1
        assert not engine.is_processing_order
        assert len(delegate.completions) == 1
        assert isinstance(delegate.completions[0], LoadError)

    @pytest.mark.asyncio
    async def test_unsupported_extension_is_a_load_error(self, make_engine, transfers, delegate):
        class GifLoader(FakeAssetLoader):
            async def image_data(self, asset):
                return b"GIF89a", "gif"

        engine = make_engine(transfers, asset_loader=GifLoader())

        await engine.start_processing(make_order([make_asset("a")]))

        assert delegate.completions[0].kind == "UnsupportedFormatError"
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_disk_error_keeps_the_order(self, make_engine, transfers, delegate, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        engine = make_engine(transfers, scratch_dir=blocker / "scratch")

        await engine.start_processing(make_order([make_asset("a")]))

        assert delegate.events == ["upload", "complete"]
        assert isinstance(delegate.completions[0], DiskError)
        assert engine.is_processing_order
        assert transfers.uploads == []

    @pytest.mark.asyncio
    async def test_transport_error_is_recoverable(self, engine, transfers, delegate):
        await engine.start_processing(make_order([make_asset("a")]))

        await transfers.complete("a", error=TransportError("offline", code=503))

        assert delegate.events == ["upload", "complete"]
        error = delegate.completions[0]
        assert error.recoverable
        assert error.code == 503
        assert engine.is_processing_order

        assert await engine.retry() is True
        assert len(transfers.uploads) == 2


# ============================================================================
# Submission pipeline
# ============================================================================


class TestPipeline:

    @pytest.mark.asyncio
    async def test_duplicated_asset_order_runs_to_completion(
        self, engine, transfers, generator, commerce, delegate, store
    ):
        await engine.start_processing(
            make_order([make_asset("a"), make_asset("b")], [make_asset("b"), make_asset("c")])
        )

        await transfers.complete("a")
        await transfers.complete("b")
        assert delegate.events == ["upload", "upload"]
        await transfers.complete("c")

        assert delegate.events == ["upload", "upload", "upload", "will_finish", "complete"]
        assert delegate.completions == [None]
        assert sorted(generator.calls) == ["photobook-0", "photobook-1"]
        assert len(commerce.submit_calls) == 1
        assert not engine.is_processing_order
        assert not store.path_for(OrderSlot.PROCESSING).exists()

    @pytest.mark.asyncio
    async def test_two_events_cover_all_assets(self, engine, transfers, generator, commerce, delegate):
        await engine.start_processing(
            make_order([make_asset("a"), make_asset("b")], [make_asset("b")])
        )

        await transfers.complete("a")
        await transfers.complete("b")

        assert delegate.events.count("will_finish") == 1
        assert len(generator.calls) == 2
        assert len(commerce.submit_calls) == 1
        jobs = commerce.submit_calls[0]["jobs"]
        assert [len(job["pdf_urls"]) for job in jobs] == [2, 2]
        assert jobs[1]["photo_urls"] == ["https://images.example/b.jpg"]

    @pytest.mark.asyncio
    async def test_transient_submit_error_keeps_order_for_retry(self, make_engine, transfers, delegate):
        commerce = FakeCommerce(submissions=[TransportError("bad gateway", code=502), "PS-77"])
        engine = make_engine(transfers, commerce=commerce)

        await engine.start_processing(uploaded_order())

        assert isinstance(delegate.completions[0], TransportError)
        assert delegate.completions[0].recoverable
        assert engine.is_processing_order
        assert engine.processing_order.order_id is None

        await engine.retry()

        assert delegate.completions[-1] is None
        assert len(commerce.submit_calls) == 2
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_retry_skips_products_that_already_have_artifacts(
        self, make_engine, transfers, generator
    ):
        commerce = FakeCommerce(submissions=[TransportError("timeout"), "PS-1"])
        engine = make_engine(transfers, commerce=commerce)
        await engine.start_processing(uploaded_order())

        await engine.retry()

        assert len(generator.calls) == 2

    @pytest.mark.asyncio
    async def test_payment_error_on_third_poll(self, make_engine, transfers, delegate):
        commerce = FakeCommerce(statuses=["received", "accepted", "payment_error"])
        engine = make_engine(transfers, commerce=commerce)

        await engine.start_processing(uploaded_order())

        assert len(commerce.status_calls) == 3
        assert len(delegate.completions) == 1
        assert isinstance(delegate.completions[0], PaymentError)
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_polling_gives_up_after_max_polls(self, make_engine, transfers, delegate):
        commerce = FakeCommerce(statuses=["received"])
        engine = make_engine(transfers, commerce=commerce, max_polls=4)

        await engine.start_processing(uploaded_order())

        assert len(commerce.status_calls) == 4
        assert isinstance(delegate.completions[0], PollingExhaustedError)
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_polling_transport_error_resumes_without_resubmitting(
        self, make_engine, transfers, delegate, store
    ):
        commerce = FakeCommerce(statuses=["received", TransportError("offline"), "validated"])
        engine = make_engine(transfers, commerce=commerce)

        await engine.start_processing(uploaded_order())

        assert isinstance(delegate.completions[0], TransportError)
        assert store.load(OrderSlot.PROCESSING).order_id == "PS-1001"
        assert engine.pipeline.stage is Stage.POLLING

        await engine.retry()

        assert len(commerce.submit_calls) == 1
        assert len(commerce.status_calls) == 3
        assert delegate.completions[-1] is None

    @pytest.mark.asyncio
    async def test_unexpected_status_is_a_generic_failure(self, make_engine, transfers, delegate):
        engine = make_engine(transfers, commerce=FakeCommerce(statuses=["cancelled"]))

        await engine.start_processing(uploaded_order())

        assert type(delegate.completions[0]) is OrderProcessingError
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_artifact_failure_stops_before_submission(self, make_engine, transfers, delegate):
        commerce = FakeCommerce()
        engine = make_engine(
            transfers,
            artifact_generator=FakeArtifactGenerator(fail_for=["photobook-1"]),
            commerce=commerce,
        )

        await engine.start_processing(uploaded_order())

        assert isinstance(delegate.completions[0], ArtifactGenerationError)
        assert commerce.submit_calls == []
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_missing_payment_is_a_parameter_error(self, engine, commerce, delegate):
        order = make_order([make_asset("a", uploaded=True)], paid=False)

        await engine.start_processing(order)

        assert isinstance(delegate.completions[0], ParameterError)
        assert commerce.submit_calls == []
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_finish_order_waits_for_uploads(self, engine, generator):
        await engine.start_processing(make_order([make_asset("a")]))

        await engine.finish_order()

        assert generator.calls == []
        assert engine.pipeline.stage is Stage.UPLOADING


# ============================================================================
# Cancellation
# ============================================================================


class TestCancellation:

    @pytest.mark.asyncio
    async def test_nothing_processing_completes_immediately(self, engine, transfers):
        fired = []

        await engine.cancel_processing(lambda: fired.append("done"))

        assert fired == ["done"]
        assert transfers.cancel_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_mid_upload(self, engine, transfers, generator, delegate, store):
        await engine.start_processing(make_order([make_asset("a"), make_asset("b")]))
        await transfers.complete("a")
        task_b = transfers.task_for("b")
        fired = []

        await engine.cancel_processing(lambda: fired.append("done"))

        assert fired == ["done"]
        assert transfers.cancel_calls == 1
        assert transfers.in_flight == {}
        assert not engine.is_processing_order
        assert not store.path_for(OrderSlot.PROCESSING).exists()

        await transfers.deliver(
            TransferEvent(task_id=task_b, reference=reference_for("b"), response={"full": "https://x/b"})
        )
        assert generator.calls == []
        assert "will_finish" not in delegate.events
        assert not store.path_for(OrderSlot.PROCESSING).exists()

    @pytest.mark.asyncio
    async def test_cancel_wins_over_in_flight_stage(self, make_engine, transfers, delegate):
        generator = BlockingArtifactGenerator()
        commerce = FakeCommerce()
        engine = make_engine(transfers, artifact_generator=generator, commerce=commerce)
        fired = []

        run = asyncio.create_task(engine.start_processing(uploaded_order()))
        await generator.started.wait()
        cancel = asyncio.create_task(engine.cancel_processing(lambda: fired.append("done")))
        await asyncio.sleep(0)
        generator.release.set()
        await asyncio.gather(run, cancel)

        assert fired == ["done"]
        assert commerce.submit_calls == []
        assert delegate.completions == []
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_cancel_during_submission_keeps_no_order_id(
        self, make_engine, transfers, delegate, store
    ):
        commerce = BlockingCommerce()
        engine = make_engine(transfers, commerce=commerce)
        fired = []

        run = asyncio.create_task(engine.start_processing(uploaded_order()))
        await commerce.submit_started.wait()
        cancel = asyncio.create_task(engine.cancel_processing(lambda: fired.append("done")))
        await asyncio.sleep(0)
        commerce.release.set()
        await asyncio.gather(run, cancel)

        assert fired == ["done"]
        assert len(commerce.submit_calls) == 1
        assert commerce.status_calls == []
        assert delegate.completions == []
        assert not engine.is_processing_order
        assert not store.path_for(OrderSlot.PROCESSING).exists()

    @pytest.mark.asyncio
    async def test_cancel_between_status_checks(self, make_engine, transfers, delegate):
        commerce = FakeCommerce(statuses=["received"])
        engine = make_engine(transfers, commerce=commerce, poll_interval=0.05)
        fired = []

        run = asyncio.create_task(engine.start_processing(uploaded_order()))
        while not commerce.status_calls:
            await asyncio.sleep(0)
        await engine.cancel_processing(lambda: fired.append("done"))
        await run

        assert fired == ["done"]
        assert len(commerce.status_calls) == 1
        assert delegate.completions == []
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_new_order_runs_while_cancelled_run_drains(self, make_engine, transfers, delegate):
        generator = BlockingArtifactGenerator()
        commerce = FakeCommerce()
        engine = make_engine(transfers, artifact_generator=generator, commerce=commerce)
        fired = []

        first = asyncio.create_task(engine.start_processing(uploaded_order()))
        await generator.started.wait()
        await engine.cancel_processing(lambda: fired.append("done"))
        second = asyncio.create_task(engine.start_processing(uploaded_order()))
        generator.release.set()
        await asyncio.gather(first, second)

        assert fired == ["done"]
        assert delegate.completions == [None]
        assert len(commerce.submit_calls) == 1
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_second_request_replaces_completion(self, engine, transfers):
        await engine.start_processing(make_order([make_asset("a")]))
        fired = []

        first = asyncio.create_task(engine.cancel_processing(lambda: fired.append("first")))
        await asyncio.sleep(0)
        second = asyncio.create_task(engine.cancel_processing(lambda: fired.append("second")))
        await asyncio.gather(first, second)

        assert fired == ["second"]
        assert transfers.cancel_calls == 1
        assert not engine.is_processing_order

    @pytest.mark.asyncio
    async def test_retry_is_refused_while_cancelling(self, engine, transfers):
        await engine.start_processing(make_order([make_asset("a")]))

        cancel = asyncio.create_task(engine.cancel_processing())
        await asyncio.sleep(0)
        assert engine.cancellation.is_pending
        assert await engine.retry() is False
        await cancel


# ============================================================================
# Recovery after restart
# ============================================================================


class TestRecovery:

    @pytest.mark.asyncio
    async def test_lazy_load_from_store(self, make_engine, store):
        store.save(make_order([make_asset("a")]), OrderSlot.PROCESSING)

        engine = make_engine(FakeTransfers())

        assert engine.is_processing_order
        assert engine.processing_order.all_assets()[0].identifier == "a"

    @pytest.mark.asyncio
    async def test_resume_reaches_same_terminal_state(
        self, make_engine, store, generator, commerce, delegate
    ):
        first = make_engine(FakeTransfers())
        await first.start_processing(
            make_order([make_asset("a"), make_asset("b")], [make_asset("c")])
        )
        await first.transfers.complete("a")

        # New process: the task table still lists the two unfinished uploads.
        transfers = FakeTransfers(in_flight=first.transfers.references())
        engine = make_engine(transfers)

        assert await engine.load_processing_order() is True
        assert transfers.reattach_calls == 1
        assert len(engine.processing_order.remaining_assets_to_upload()) == 2

        await transfers.complete("b")
        await transfers.complete("c")

        assert delegate.completions == [None]
        assert sorted(generator.calls) == ["photobook-0", "photobook-1"]
        assert len(commerce.submit_calls) == 1
        assert not engine.is_processing_order
        assert not store.path_for(OrderSlot.PROCESSING).exists()

    @pytest.mark.asyncio
    async def test_stale_tasks_without_order_are_dropped(self, make_engine):
        transfers = FakeTransfers(in_flight={7: reference_for("a")})
        engine = make_engine(transfers)

        assert await engine.load_processing_order() is False
        assert transfers.cancel_calls == 1
        assert transfers.reattach_calls == 0


class TestStatus:

    @pytest.mark.asyncio
    async def test_reports_progress(self, engine, transfers):
        await engine.start_processing(make_order([make_asset("a"), make_asset("b")], [make_asset("b")]))
        await transfers.complete("a")

        status = engine.status()

        assert status["processing"] is True
        assert status["stage"] == "uploading"
        assert status["total_assets"] == 3
        assert status["remaining_assets"] == 2
        assert status["pending_uploads"] == 1
        assert engine.has_pending_uploads()

    def test_idle(self, engine):
        status = engine.status()

        assert status["processing"] is False
        assert status["stage"] is None
        assert status["pending_uploads"] == 0
