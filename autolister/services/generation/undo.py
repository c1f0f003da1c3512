"""
Undo / Snapshot 관리

- 단일 레벨: 새 스냅샷을 잡으면 이전 스냅샷은 버려집니다.
- TTL (기본 5분): 만료 타이머가 능동적으로 비우며, undo 시점에도 다시 확인합니다.
- 만료 후 undo 는 EXPIRED 를 돌려주고 스냅샷은 남지 않습니다.
  단, 타이머로 만료된 상품별 슬롯은 맵에서 제거되므로 이후 undo_item 은 EMPTY 입니다.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from autolister.services.ai.exceptions import PersistenceError, wrap_exception
from autolister.services.collaborators import Placement, PlacementStore, ProductPersistence
from autolister.services.generation.field_merge import DIRECT_FIELDS
from autolister.settings import settings

logger = logging.getLogger(__name__)

# 생성 직전에 보관하는 필드 (병합 엔진이 건드릴 수 있는 모든 필드 + status)
ENRICHABLE_FIELDS = DIRECT_FIELDS + (
    "era",
    "department",
    "condition",
    "shopify_tags",
    "price",
    "sku",
    "notes",
)
SNAPSHOT_FIELDS = ENRICHABLE_FIELDS + ("status",)


def _wall_clock() -> float:
    return time.time()


class UndoOutcome(Enum):
    RESTORED = "restored"
    PARTIAL = "partial"
    FAILED = "failed"
    EXPIRED = "expired"
    EMPTY = "empty"


@dataclass
class UndoResult:
    outcome: UndoOutcome
    label: Optional[str] = None
    restored: int = 0
    failed: int = 0
    restored_ids: List[Any] = field(default_factory=list)
    restored_states: Dict[Any, Dict[str, Any]] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.outcome is UndoOutcome.EXPIRED:
            return "Undo expired"
        if self.outcome is UndoOutcome.EMPTY:
            return "Nothing to undo"
        if self.outcome is UndoOutcome.FAILED:
            return f"Failed to undo: {self.label}"
        if self.outcome is UndoOutcome.PARTIAL:
            return f"Undo partially applied: {self.restored} restored, {self.failed} failed"
        return f"Undone: {self.label}"


@dataclass
class Snapshot:
    payload: Any
    label: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class SnapshotSlot:
    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
        name: str = "undo",
        on_expire: Optional[Callable[[], None]] = None,
    ):
        self.ttl_seconds = settings.undo_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock or _wall_clock
        self.name = name
        self._snapshot: Optional[Snapshot] = None
        self._expired = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._on_expire = on_expire

    def capture(self, payload: Any, label: str) -> Snapshot:
        self._cancel_timer()
        now = self._clock()
        self._snapshot = Snapshot(payload=payload, label=label, created_at=now, expires_at=now + self.ttl_seconds)
        self._expired = False
        self._schedule_expiry(self._snapshot)
        logger.debug(f"[undo] {self.name}: captured '{label}'")
        return self._snapshot

    def resolve(self) -> Tuple[Optional[Snapshot], Optional[UndoOutcome]]:
        """
        유효한 스냅샷이 있으면 (snapshot, None), 없으면 (None, EXPIRED | EMPTY)
        """
        snapshot = self._snapshot
        if snapshot is None:
            if self._expired:
                self._expired = False
                return None, UndoOutcome.EXPIRED
            return None, UndoOutcome.EMPTY
        if snapshot.is_expired(self._clock()):
            self.clear()
            logger.info(f"[undo] {self.name}: '{snapshot.label}' expired")
            return None, UndoOutcome.EXPIRED
        return snapshot, None

    @property
    def current(self) -> Optional[Snapshot]:
        snapshot = self._snapshot
        if snapshot is not None and snapshot.is_expired(self._clock()):
            self._expire(snapshot)
            return None
        return snapshot

    @property
    def remaining_seconds(self) -> float:
        snapshot = self.current
        if snapshot is None:
            return 0.0
        return max(0.0, snapshot.expires_at - self._clock())

    def clear(self) -> None:
        self._cancel_timer()
        self._snapshot = None
        self._expired = False

    def _expire(self, snapshot: Snapshot) -> None:
        if self._snapshot is not snapshot:
            return
        self._cancel_timer()
        self._snapshot = None
        self._expired = True
        if self._on_expire is not None:
            self._on_expire()

    def _schedule_expiry(self, snapshot: Snapshot) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 실행 중인 이벤트 루프가 없으면 undo 시점 확인만 사용
            return
        self._timer = loop.call_later(self.ttl_seconds, self._expire, snapshot)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


def capture_fields(item: Any, fields: Iterable[str] = SNAPSHOT_FIELDS) -> Dict[str, Any]:
    return {name: getattr(item, name, None) for name in fields}


class FieldUndoManager:
    """
    AI 생성 전 필드 값을 보관/복원합니다.
    상품별 슬롯과 일괄(bulk) 슬롯을 따로 둡니다.
    """

    def __init__(
        self,
        persistence: ProductPersistence,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.persistence = persistence
        self.ttl_seconds = ttl_seconds
        self._clock = clock or _wall_clock
        self._item_slots: Dict[Any, SnapshotSlot] = {}
        self._bulk = SnapshotSlot(ttl_seconds, clock, name="bulk")

    def capture_item(self, item: Any, label: str = "AI generation") -> Snapshot:
        slot = self._item_slots.get(item.id)
        if slot is None:
            slot = SnapshotSlot(
                self.ttl_seconds,
                self._clock,
                name=f"item:{item.id}",
                on_expire=partial(self._forget_item, item.id),
            )
            self._item_slots[item.id] = slot
        return slot.capture(capture_fields(item), label)

    def capture_bulk(self, items: List[Any], label: str) -> Snapshot:
        states = {}
        for item in items:
            states[item.id] = capture_fields(item)
            self.capture_item(item, label)
        return self._bulk.capture(states, label)

    def _forget_item(self, item_id: Any) -> None:
        # 만료된 상품 슬롯은 맵에서 제거 (이후 undo_item 은 EMPTY)
        self._item_slots.pop(item_id, None)

    def has_item_snapshot(self, item_id: Any) -> bool:
        slot = self._item_slots.get(item_id)
        return slot is not None and slot.current is not None

    @property
    def bulk_snapshot(self) -> Optional[Snapshot]:
        return self._bulk.current

    async def undo_item(self, item_id: Any) -> UndoResult:
        slot = self._item_slots.get(item_id)
        if slot is None:
            return UndoResult(UndoOutcome.EMPTY)
        snapshot, outcome = slot.resolve()
        if snapshot is None:
            self._item_slots.pop(item_id, None)
            return UndoResult(outcome)

        if await self._restore(item_id, snapshot.payload):
            slot.clear()
            self._item_slots.pop(item_id, None)
            return UndoResult(
                UndoOutcome.RESTORED,
                label=snapshot.label,
                restored=1,
                restored_ids=[item_id],
                restored_states={item_id: dict(snapshot.payload)},
            )
        return UndoResult(UndoOutcome.FAILED, label=snapshot.label, failed=1)

    async def undo_bulk(self) -> UndoResult:
        snapshot, outcome = self._bulk.resolve()
        if snapshot is None:
            return UndoResult(outcome)

        states: Dict[Any, Dict[str, Any]] = snapshot.payload
        ids = list(states)
        results = await asyncio.gather(*(self._restore(item_id, states[item_id]) for item_id in ids))

        restored_ids = [item_id for item_id, ok in zip(ids, results) if ok]
        failed = len(ids) - len(restored_ids)
        for item_id in restored_ids:
            slot = self._item_slots.pop(item_id, None)
            if slot is not None:
                slot.clear()
        self._bulk.clear()

        logger.info(f"[undo] bulk '{snapshot.label}': restored={len(restored_ids)} failed={failed}")
        return UndoResult(
            UndoOutcome.RESTORED if failed == 0 else UndoOutcome.PARTIAL,
            label=snapshot.label,
            restored=len(restored_ids),
            failed=failed,
            restored_ids=restored_ids,
            restored_states={item_id: dict(states[item_id]) for item_id in restored_ids},
        )

    async def _restore(self, item_id: Any, fields: Dict[str, Any]) -> bool:
        try:
            return bool(await self.persistence.update(item_id, dict(fields)))
        except Exception as e:
            wrapped = wrap_exception(e, PersistenceError, table_name="products", operation="update")
            logger.error(f"[undo] Failed to restore {item_id}: {wrapped}")
            return False


class StructuralUndoManager:
    """
    이미지 재그룹/이동 직전의 (image_id, product_id, position) 을 보관/복원합니다.
    일부 복원 실패 시 스냅샷을 유지해 다시 시도할 수 있게 합니다.
    """

    def __init__(
        self,
        store: PlacementStore,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self._slot = SnapshotSlot(ttl_seconds, clock, name="structural")

    async def capture(self, image_ids: List[Any], label: str) -> List[Placement]:
        placements = await self.store.fetch_placements(list(image_ids))
        self._slot.capture(list(placements), label)
        return placements

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self._slot.current

    def clear(self) -> None:
        self._slot.clear()

    async def undo(self) -> UndoResult:
        snapshot, outcome = self._slot.resolve()
        if snapshot is None:
            return UndoResult(outcome)

        placements: List[Placement] = snapshot.payload
        results = await asyncio.gather(
            *(self.store.write_placement(p) for p in placements),
            return_exceptions=True,
        )
        restored_ids = []
        failed = 0
        for placement, result in zip(placements, results):
            if isinstance(result, Exception):
                logger.error(f"[undo] Failed to restore image {placement.entity_id}: {result}")
                failed += 1
            elif not result:
                failed += 1
            else:
                restored_ids.append(placement.entity_id)

        if failed:
            logger.warning(f"[undo] '{snapshot.label}' partially restored; keeping snapshot for retry")
            return UndoResult(
                UndoOutcome.PARTIAL,
                label=snapshot.label,
                restored=len(restored_ids),
                failed=failed,
                restored_ids=restored_ids,
            )

        self._slot.clear()
        return UndoResult(UndoOutcome.RESTORED, label=snapshot.label, restored=len(restored_ids), restored_ids=restored_ids)
