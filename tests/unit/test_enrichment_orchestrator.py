"""
EnrichmentOrchestrator 테스트.

청크 단위 제한 동시 실행, 배치 락, 실패 격리/재시도, 일괄 undo 를 검증합니다.
"""

import asyncio

import pytest

from autolister.services.ai.exceptions import FatalProviderError, ProviderError, ValidationError
from autolister.services.events import GENERATION_PROGRESS, GENERATION_SUMMARY
from autolister.services.generation.orchestrator import BulkOutcome, ItemStatus
from autolister.services.generation.undo import UndoOutcome


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.mark.unit
class TestBulkGeneration:

    @pytest.mark.asyncio
    async def test_bounded_batch_reports_remaining(self, orchestrator, generator, make_product):
        """7개 중 배치 크기 5 → 5개 처리, 2개 남음, 청크 [3, 2]."""
        items = [make_product(title=f"item {i}") for i in range(7)]
        sleeper = SleepRecorder()
        orchestrator._sleep = sleeper

        result = await orchestrator.generate_bulk(items, batch_size=5)

        assert result.outcome is BulkOutcome.COMPLETED
        assert result.success_count == 5
        assert result.error_count == 0
        assert result.remaining_count == 2
        assert result.processed_ids == [item.id for item in items[:5]]
        assert result.message == "AI generated details for 5 product(s) 2 more products remaining..."
        assert len(generator.calls) == 5
        assert generator.max_in_flight <= 3
        assert sleeper.calls == [0.5]

        # 다음 호출은 남은 2개만 처리
        second = await orchestrator.generate_bulk(items, batch_size=5)
        assert second.success_count == 2
        assert second.remaining_count == 0
        assert len(generator.calls) == 7

    @pytest.mark.asyncio
    async def test_in_flight_calls_never_exceed_width(self, orchestrator, generator, make_product):
        items = [make_product() for _ in range(10)]

        await orchestrator.generate_bulk(items, batch_size=10)

        assert generator.max_in_flight == 3
        assert len(generator.calls) == 10

    @pytest.mark.asyncio
    async def test_items_without_images_are_never_sent(self, orchestrator, generator, make_product):
        with_images = make_product()
        without = make_product(images=0, title="Bare")

        result = await orchestrator.generate_bulk([with_images, without])

        assert generator.calls == [str(with_images.id)]
        assert result.success_count == 1
        assert result.error_count == 1
        assert result.message == "Generated 1 product(s). 1 failed."
        record = orchestrator.failures.get(without.id)
        assert record.error_reason == "No images"
        assert record.human_label == "Bare"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_cancel_siblings(self, orchestrator, generator, persistence, make_product):
        items = [make_product() for _ in range(3)]
        generator.errors[str(items[1].id)] = ProviderError("Generation failed")

        result = await orchestrator.generate_bulk(items)

        assert result.success_count == 2
        assert result.error_count == 1
        assert items[0].status == "generated"
        assert items[1].status == "error"
        assert {"status": "error"} in persistence.updates_for(items[1].id)
        assert orchestrator.failures.ids == [items[1].id]
        assert orchestrator.progress.generating_ids == frozenset()

    @pytest.mark.asyncio
    async def test_second_bulk_call_is_rejected_while_running(self, orchestrator, generator, make_product):
        items = [make_product() for _ in range(4)]

        first, second = await asyncio.gather(
            orchestrator.generate_bulk(items),
            orchestrator.generate_bulk(items),
        )

        assert first.outcome is BulkOutcome.COMPLETED
        assert second.outcome is BulkOutcome.ALREADY_RUNNING
        assert second.processed_ids == []
        assert second.message == "Generation already in progress"
        assert len(generator.calls) == 4
        assert not orchestrator.locks.batch_locked

    @pytest.mark.asyncio
    async def test_fatal_error_halts_later_chunks(self, orchestrator, generator, make_product):
        items = [make_product() for _ in range(7)]
        generator.errors[str(items[1].id)] = FatalProviderError("AI credits exhausted")

        result = await orchestrator.generate_bulk(items, batch_size=10)

        assert result.outcome is BulkOutcome.HALTED
        assert len(generator.calls) == 3
        assert result.success_count == 2
        assert result.error_count == 1
        assert result.remaining_count == 4
        assert result.message.startswith("Generation halted: AI credits exhausted")

    @pytest.mark.asyncio
    async def test_nothing_to_do_vs_all_done(self, orchestrator, generator, make_product):
        assert (await orchestrator.generate_bulk([])).outcome is BulkOutcome.NOTHING_TO_DO

        done = [make_product(status="generated") for _ in range(2)]
        orchestrator.initialize_enriched_status(done)
        result = await orchestrator.generate_bulk(done)

        assert result.outcome is BulkOutcome.ALL_DONE
        assert result.message == "All 2 products already generated. Select specific products to re-generate."
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_explicit_selection_regenerates(self, orchestrator, generator, make_product):
        done = make_product(status="generated")
        orchestrator.initialize_enriched_status([done])

        result = await orchestrator.generate_bulk([done], selected_ids=[done.id])

        assert result.success_count == 1
        assert generator.calls == [str(done.id)]

    @pytest.mark.asyncio
    async def test_locked_item_is_skipped(self, orchestrator, generator, make_product):
        busy = make_product()
        free = make_product()
        orchestrator.locks.try_acquire_item(busy.id)

        result = await orchestrator.generate_bulk([busy, free], selected_ids=[busy.id, free.id])

        assert result.skipped_count == 1
        assert result.success_count == 1
        assert generator.calls == [str(free.id)]
        assert orchestrator.is_generating(busy.id)

    @pytest.mark.asyncio
    async def test_rejected_persistence_counts_as_failure(self, orchestrator, persistence, make_product):
        item = make_product()
        persistence.reject_ids.add(item.id)

        result = await orchestrator.generate_bulk([item])

        assert result.error_count == 1
        assert not orchestrator.is_enriched(item.id)
        assert item.id in orchestrator.failures

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, orchestrator, make_product):
        with pytest.raises(ValidationError):
            await orchestrator.generate_bulk([make_product()], batch_size=7)

    @pytest.mark.asyncio
    async def test_progress_event_per_chunk_and_one_summary(self, orchestrator, event_bus, make_product):
        progress, summaries = [], []
        event_bus.subscribe(GENERATION_PROGRESS, progress.append)
        event_bus.subscribe(GENERATION_SUMMARY, summaries.append)
        items = [make_product() for _ in range(5)]

        await orchestrator.generate_bulk(items)

        assert [p.current_chunk for p in progress] == [1, 2]
        assert progress[-1].completed == 5
        assert len(summaries) == 1
        assert orchestrator.progress.running is False

    @pytest.mark.asyncio
    async def test_fresh_bulk_run_clears_failures(self, orchestrator, generator, make_product):
        bad = make_product()
        generator.errors[str(bad.id)] = ProviderError("nope")
        await orchestrator.generate_bulk([bad])
        assert len(orchestrator.failures) == 1

        good = make_product()
        await orchestrator.generate_bulk([good])

        assert len(orchestrator.failures) == 0


@pytest.mark.unit
class TestRetryFailed:

    @pytest.mark.asyncio
    async def test_retry_only_reprocesses_failed_items(self, orchestrator, generator, make_product):
        items = [make_product() for _ in range(3)]
        generator.errors[str(items[1].id)] = ProviderError("timeout upstream")
        await orchestrator.generate_bulk(items)
        generator.calls.clear()
        generator.errors.clear()

        result = await orchestrator.retry_failed(items)

        assert generator.calls == [str(items[1].id)]
        assert result.success_count == 1
        assert len(orchestrator.failures) == 0
        assert items[1].status == "generated"

    @pytest.mark.asyncio
    async def test_repeated_failure_replaces_record(self, orchestrator, generator, make_product):
        item = make_product()
        generator.errors[str(item.id)] = ProviderError("first")
        await orchestrator.generate_bulk([item])

        generator.errors[str(item.id)] = ProviderError("second")
        await orchestrator.retry_failed([item])

        assert orchestrator.failures.get(item.id).error_reason == "second"
        assert len(orchestrator.failures) == 1

    @pytest.mark.asyncio
    async def test_retry_with_no_failures(self, orchestrator):
        result = await orchestrator.retry_failed([])
        assert result.outcome is BulkOutcome.NOTHING_TO_DO


@pytest.mark.unit
class TestSingleAndUndo:

    @pytest.mark.asyncio
    async def test_generate_single_skips_when_locked(self, orchestrator, generator, make_product):
        item = make_product()
        orchestrator.locks.try_acquire_item(item.id)

        outcome = await orchestrator.generate_single(item)

        assert outcome.status is ItemStatus.SKIPPED
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_generate_single_without_images(self, orchestrator, generator, make_product):
        item = make_product(images=0)

        outcome = await orchestrator.generate_single(item)

        assert outcome.no_images is True
        assert outcome.status is ItemStatus.FAILED
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_invalid_image_urls_are_not_classified_as_no_images(self, orchestrator, generator, image_store, make_product):
        """이미지는 있지만 http(s) URL 이 없으면 noImages 가 아닌 별도 실패."""
        item = make_product(images=0)
        image_store.add(item.id, "blob:local/1", "data:image/png;base64,xx")

        outcome = await orchestrator.generate_single(item)

        assert outcome.status is ItemStatus.FAILED
        assert outcome.no_images is False
        assert "no valid http(s) image URLs" in outcome.reason
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_undo_single_restores_item_and_membership(self, orchestrator, make_product):
        item = make_product(title="Before")

        outcome = await orchestrator.generate_single(item)
        assert outcome.success
        assert item.title == "Vintage Nike Windbreaker"
        assert orchestrator.is_enriched(item.id)

        result = await orchestrator.undo_single(item)

        assert result.outcome is UndoOutcome.RESTORED
        assert item.title == "Before"
        assert item.status == "new"
        assert not orchestrator.is_enriched(item.id)

    @pytest.mark.asyncio
    async def test_undo_bulk_restores_all_items(self, orchestrator, make_product):
        items = [make_product(title=f"orig {i}") for i in range(4)]
        await orchestrator.generate_bulk(items)

        result = await orchestrator.undo_bulk(items)

        assert result.outcome is UndoOutcome.RESTORED
        assert result.restored == 4
        assert [item.title for item in items] == [f"orig {i}" for i in range(4)]
        assert orchestrator.get_unprocessed_count(items) == 4

    @pytest.mark.asyncio
    async def test_unprocessed_count(self, orchestrator, make_product):
        items = [make_product(), make_product(status="generated"), make_product()]
        orchestrator.initialize_enriched_status(items)
        assert orchestrator.get_unprocessed_count(items) == 2
