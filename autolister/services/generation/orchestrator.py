import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional

from autolister.services.ai.exceptions import (
    FatalProviderError,
    PersistenceError,
    ProviderError,
    ValidationError,
    wrap_exception,
)
from autolister.services.ai.service import GenerationService
from autolister.services.collaborators import ImageRef, ImageStore, ProductPersistence
from autolister.services.events import GENERATION_PROGRESS, GENERATION_SUMMARY, EventBus, bus
from autolister.services.generation.concurrency_guard import GenerationLockRegistry
from autolister.services.generation.eligibility import (
    initial_enriched_ids,
    is_deleted,
    select_eligible,
    split_by_images,
)
from autolister.services.generation.failure_tracker import FailureRecord, FailureTracker
from autolister.services.generation.field_merge import FieldMergeEngine
from autolister.services.generation.undo import FieldUndoManager, UndoResult
from autolister.settings import settings

logger = logging.getLogger(__name__)


class ItemStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class BulkOutcome(Enum):
    COMPLETED = "completed"
    ALREADY_RUNNING = "already_running"
    NOTHING_TO_DO = "nothing_to_do"
    ALL_DONE = "all_done"
    HALTED = "halted"


@dataclass(frozen=True)
class ItemOutcome:
    item_id: Any
    status: ItemStatus
    reason: Optional[str] = None
    no_images: bool = False
    fatal: bool = False

    @property
    def success(self) -> bool:
        return self.status is ItemStatus.SUCCESS


@dataclass
class BulkGenerationResult:
    outcome: BulkOutcome
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    remaining_count: int = 0
    processed_ids: List[Any] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    message: str = ""


@dataclass(frozen=True)
class GenerationProgress:
    running: bool = False
    total: int = 0
    completed: int = 0
    success_count: int = 0
    error_count: int = 0
    current_chunk: int = 0
    total_chunks: int = 0
    generating_ids: FrozenSet[Any] = frozenset()


@dataclass
class _ChunkTally:
    success: int = 0
    errors: int = 0
    skipped: int = 0
    processed_ids: List[Any] = field(default_factory=list)
    fatal: Optional[str] = None


def human_label(item: Any) -> str:
    return getattr(item, "title", None) or getattr(item, "sku", None) or str(item.id)[:8]


class EnrichmentOrchestrator:
    """
    대량 AI 생성 오케스트레이터.

    배치 락 → 후보 선별 → 이미지 사전 점검 → 청크 단위 제한 동시 호출 → 병합/저장 → 실패 기록.
    청크 N+1 은 청크 N 이 모두 끝난 뒤에만 시작합니다.
    """

    def __init__(
        self,
        generation: GenerationService,
        merger: FieldMergeEngine,
        persistence: ProductPersistence,
        image_store: ImageStore,
        event_bus: EventBus = bus,
        undo: Optional[FieldUndoManager] = None,
        batch_size: Optional[int] = None,
        concurrency_width: Optional[int] = None,
        chunk_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.generation = generation
        self.merger = merger
        self.persistence = persistence
        self.image_store = image_store
        self.bus = event_bus
        self.undo = undo or FieldUndoManager(persistence)
        self.batch_size = batch_size or settings.generation_batch_size
        self.concurrency_width = concurrency_width or settings.generation_concurrency_width
        self.chunk_delay = settings.generation_chunk_delay if chunk_delay is None else chunk_delay
        self._sleep = sleep

        self.locks = GenerationLockRegistry()
        self.failures = FailureTracker()
        self._enriched_ids: set = set()
        self._progress = GenerationProgress()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def progress(self) -> GenerationProgress:
        return replace(self._progress, generating_ids=self.locks.generating_ids)

    @property
    def enriched_ids(self) -> FrozenSet[Any]:
        return frozenset(self._enriched_ids)

    def is_generating(self, item_id: Any) -> bool:
        return self.locks.is_locked(item_id)

    def is_enriched(self, item_id: Any) -> bool:
        return item_id in self._enriched_ids

    def initialize_enriched_status(self, items: Iterable[Any]) -> None:
        self._enriched_ids = initial_enriched_ids(items)

    def get_unprocessed_count(self, items: Iterable[Any]) -> int:
        return sum(
            1 for item in items
            if not is_deleted(item) and item.status == "new" and item.id not in self._enriched_ids
        )

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    async def generate_single(self, item: Any, skip_undo: bool = False) -> ItemOutcome:
        with self.locks.hold_item(item.id) as acquired:
            if not acquired:
                logger.info(f"[AI] Product {item.id} is already generating, skipping")
                return ItemOutcome(item.id, ItemStatus.SKIPPED, reason="Already generating")

            if not skip_undo:
                self.undo.capture_item(item, label=f"AI generation for {human_label(item)}")

            try:
                images = await self.image_store.fetch_images(item.id)
            except Exception as e:
                wrapped = wrap_exception(e, PersistenceError, table_name="product_images", operation="select")
                logger.error(f"[AI] Failed to fetch images for {item.id}: {wrapped}")
                outcome = ItemOutcome(item.id, ItemStatus.FAILED, reason=wrapped.message)
                self._track(item, outcome)
                return outcome

            if not images:
                logger.warning(f"[AI] Product {item.id} has no images, skipping")
                outcome = ItemOutcome(item.id, ItemStatus.FAILED, reason="No images", no_images=True)
                self._track(item, outcome)
                return outcome

            outcome = await self._generate_locked(item, images)
            self._track(item, outcome)
            return outcome

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def generate_bulk(
        self,
        items: List[Any],
        selected_ids: Optional[Iterable[Any]] = None,
        batch_size: Optional[int] = None,
    ) -> BulkGenerationResult:
        size = batch_size or self.batch_size
        if size not in settings.generation_batch_size_options:
            raise ValidationError(
                f"Batch size must be one of {settings.generation_batch_size_options}",
                field="batch_size",
                actual_value=size,
            )

        with self.locks.hold_batch() as acquired:
            if not acquired:
                logger.warning("[AI] Bulk generation already in progress")
                return BulkGenerationResult(BulkOutcome.ALREADY_RUNNING, message="Generation already in progress")

            self.failures.clear()
            selection = select_eligible(items, selected_ids, self.locks.generating_ids, self._enriched_ids)
            if not selection.eligible:
                if not selection.explicit and selection.already_enriched_count > 0:
                    message = (
                        f"All {selection.already_enriched_count} products already generated. "
                        "Select specific products to re-generate."
                    )
                    result = BulkGenerationResult(BulkOutcome.ALL_DONE, message=message)
                else:
                    result = BulkGenerationResult(BulkOutcome.NOTHING_TO_DO, message="No valid products to generate.")
                await self.bus.publish(GENERATION_SUMMARY, result)
                return result

            split = await split_by_images(selection.eligible, self.image_store)
            prefailed = self._track_prefilter(split.missing, split.errors)

            chosen = split.ready[:size]
            if chosen:
                self.undo.capture_bulk(
                    [item for item, _ in chosen],
                    label=f"AI generation for {len(chosen)} product(s)",
                )
            tally = await self._process(chosen)

            return await self._finish(tally, prefailed, scheduled=len(split.ready))

    async def retry_failed(self, items: List[Any]) -> BulkGenerationResult:
        """
        실패 목록에 남아있는 상품만 다시 처리합니다. (생성 여부/배치 크기 제한 무시)
        """
        if not len(self.failures):
            return BulkGenerationResult(BulkOutcome.NOTHING_TO_DO, message="No failed products to retry.")

        with self.locks.hold_batch() as acquired:
            if not acquired:
                logger.warning("[AI] Bulk generation already in progress")
                return BulkGenerationResult(BulkOutcome.ALREADY_RUNNING, message="Generation already in progress")

            lookup = {item.id: item for item in items if not is_deleted(item)}
            targets = [lookup[item_id] for item_id in self.failures.ids if item_id in lookup]
            for item_id in self.failures.ids:
                if item_id not in lookup:
                    self.failures.resolve(item_id)
            if not targets:
                return BulkGenerationResult(BulkOutcome.NOTHING_TO_DO, message="No failed products to retry.")

            logger.info(f"[AI] Retrying {len(targets)} failed product(s)")
            split = await split_by_images(targets, self.image_store)
            prefailed = self._track_prefilter(split.missing, split.errors)
            if split.ready:
                self.undo.capture_bulk(
                    [item for item, _ in split.ready],
                    label=f"AI retry for {len(split.ready)} product(s)",
                )
            tally = await self._process(split.ready)

            return await self._finish(tally, prefailed, scheduled=len(split.ready))

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    async def undo_single(self, item: Any) -> UndoResult:
        result = await self.undo.undo_item(item.id)
        self._apply_restored(result, {item.id: item})
        return result

    async def undo_bulk(self, items: Iterable[Any] = ()) -> UndoResult:
        result = await self.undo.undo_bulk()
        self._apply_restored(result, {item.id: item for item in items})
        return result

    def _apply_restored(self, result: UndoResult, lookup: Dict[Any, Any]) -> None:
        for item_id, fields in result.restored_states.items():
            self._enriched_ids.discard(item_id)
            item = lookup.get(item_id)
            if item is None:
                continue
            for name, value in fields.items():
                setattr(item, name, value)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _process(self, work: List[tuple]) -> _ChunkTally:
        tally = _ChunkTally()
        if not work:
            return tally

        width = self.concurrency_width
        chunks = [work[i:i + width] for i in range(0, len(work), width)]
        self._progress = GenerationProgress(running=True, total=len(work), total_chunks=len(chunks))

        for index, chunk in enumerate(chunks):
            results = await asyncio.gather(
                *(self._run_item(item, images) for item, images in chunk),
                return_exceptions=True,
            )

            for (item, _), result in zip(chunk, results):
                if isinstance(result, Exception):
                    wrapped = wrap_exception(result)
                    logger.error(f"[AI] Unexpected error for {item.id}: {wrapped}")
                    result = ItemOutcome(item.id, ItemStatus.FAILED, reason=wrapped.message)
                self._track(item, result)

                if result.status is ItemStatus.SKIPPED:
                    tally.skipped += 1
                    continue
                tally.processed_ids.append(item.id)
                if result.success:
                    tally.success += 1
                else:
                    tally.errors += 1
                    if result.fatal and tally.fatal is None:
                        tally.fatal = result.reason

            self._progress = GenerationProgress(
                running=True,
                total=len(work),
                completed=sum(len(c) for c in chunks[:index + 1]),
                success_count=tally.success,
                error_count=tally.errors,
                current_chunk=index + 1,
                total_chunks=len(chunks),
            )
            await self.bus.publish(GENERATION_PROGRESS, self.progress)

            if tally.fatal is not None:
                logger.error(f"[AI] Halting bulk generation after chunk {index + 1}: {tally.fatal}")
                break
            if index < len(chunks) - 1:
                await self._sleep(self.chunk_delay)

        self._progress = replace(self._progress, running=False)
        return tally

    async def _run_item(self, item: Any, images: List[ImageRef]) -> ItemOutcome:
        with self.locks.hold_item(item.id) as acquired:
            if not acquired:
                return ItemOutcome(item.id, ItemStatus.SKIPPED, reason="Already generating")
            return await self._generate_locked(item, images)

    async def _generate_locked(self, item: Any, images: List[ImageRef]) -> ItemOutcome:
        """호출자가 아이템 락을 보유한 상태에서 실행됩니다."""
        try:
            generated = await self.generation.generate(item, images)
        except ValidationError as e:
            logger.warning(f"[AI] Skipping {item.id}: {e.message}")
            return ItemOutcome(item.id, ItemStatus.FAILED, reason=e.message, no_images=e.reason == "noImages")
        except FatalProviderError as e:
            logger.error(f"[AI] Fatal provider error for {item.id}: {e.message}")
            await self._mark_error(item)
            return ItemOutcome(item.id, ItemStatus.FAILED, reason=e.message, fatal=True)
        except ProviderError as e:
            logger.error(f"[AI] Error for {item.id}: {e.message}")
            await self._mark_error(item)
            return ItemOutcome(item.id, ItemStatus.FAILED, reason=e.message)
        except Exception as e:
            wrapped = wrap_exception(e, ProviderError)
            logger.error(f"[AI] Exception for {item.id}: {wrapped}")
            await self._mark_error(item)
            return ItemOutcome(item.id, ItemStatus.FAILED, reason=wrapped.message)

        try:
            updates = await self.merger.merge(item, generated)
            saved = await self.persistence.update(item.id, updates)
            if not saved:
                raise PersistenceError(f"Update of product {item.id} was rejected", table_name="products", operation="update")
        except Exception as e:
            wrapped = wrap_exception(e, PersistenceError, table_name="products", operation="update")
            logger.error(f"[AI] Failed to save generated content for {item.id}: {wrapped}")
            await self._mark_error(item)
            return ItemOutcome(item.id, ItemStatus.FAILED, reason=wrapped.message)

        for name, value in updates.items():
            setattr(item, name, value)
        self._enriched_ids.add(item.id)
        logger.info(f"[AI] Successfully generated for {item.id}")
        return ItemOutcome(item.id, ItemStatus.SUCCESS)

    async def _mark_error(self, item: Any) -> None:
        try:
            await self.persistence.update(item.id, {"status": "error"})
        except Exception as e:
            wrapped = wrap_exception(e, PersistenceError, table_name="products", operation="update")
            logger.error(f"[AI] Could not mark {item.id} as error: {wrapped}")
            return
        item.status = "error"

    def _track(self, item: Any, outcome: ItemOutcome) -> None:
        if outcome.success:
            self.failures.resolve(item.id)
        elif outcome.status is ItemStatus.FAILED:
            self.failures.record(item.id, human_label(item), outcome.reason or "Generation failed")

    def _track_prefilter(self, missing: List[Any], errors: List[tuple]) -> int:
        for item in missing:
            self.failures.record(item.id, human_label(item), "No images")
        for item, reason in errors:
            self.failures.record(item.id, human_label(item), reason)
        return len(missing) + len(errors)

    async def _finish(self, tally: _ChunkTally, prefailed: int, scheduled: int) -> BulkGenerationResult:
        error_count = tally.errors + prefailed
        remaining = scheduled - len(tally.processed_ids) - tally.skipped
        outcome = BulkOutcome.HALTED if tally.fatal is not None else BulkOutcome.COMPLETED

        if tally.fatal is not None:
            message = f"Generation halted: {tally.fatal}"
        elif error_count > 0:
            message = f"Generated {tally.success} product(s). {error_count} failed."
        else:
            message = f"AI generated details for {tally.success} product(s)"
        if remaining > 0:
            message = f"{message} {remaining} more products remaining..."

        result = BulkGenerationResult(
            outcome,
            success_count=tally.success,
            error_count=error_count,
            skipped_count=tally.skipped,
            remaining_count=remaining,
            processed_ids=list(tally.processed_ids),
            failures=self.failures.records,
            message=message,
        )
        logger.info(
            f"[AI] Bulk generation finished: success={tally.success} errors={error_count} "
            f"skipped={tally.skipped} remaining={remaining}"
        )
        await self.bus.publish(GENERATION_SUMMARY, result)
        return result
