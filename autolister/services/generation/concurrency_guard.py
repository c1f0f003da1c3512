from contextlib import contextmanager
from typing import Any, FrozenSet, Iterator, Set


class GenerationLockRegistry:
    """
    아이템 단위 / 배치 단위 상호배제.

    asyncio 단일 스레드 모델에서 await 사이에 확인-획득이 끊기지 않으므로
    별도 Lock 객체 없이 집합으로 관리합니다. 획득 실패는 즉시 False 를 반환합니다.
    """

    def __init__(self):
        self._items: Set[Any] = set()
        self._batch_held = False

    def try_acquire_item(self, item_id: Any) -> bool:
        if item_id in self._items:
            return False
        self._items.add(item_id)
        return True

    def release_item(self, item_id: Any) -> None:
        self._items.discard(item_id)

    def try_acquire_batch(self) -> bool:
        if self._batch_held:
            return False
        self._batch_held = True
        return True

    def release_batch(self) -> None:
        self._batch_held = False

    def is_locked(self, item_id: Any) -> bool:
        return item_id in self._items

    @property
    def generating_ids(self) -> FrozenSet[Any]:
        return frozenset(self._items)

    @property
    def batch_locked(self) -> bool:
        return self._batch_held

    @contextmanager
    def hold_item(self, item_id: Any) -> Iterator[bool]:
        """
        획득 여부를 yield 합니다. 획득한 경우에만 종료 시 해제합니다.
        """
        acquired = self.try_acquire_item(item_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release_item(item_id)

    @contextmanager
    def hold_batch(self) -> Iterator[bool]:
        acquired = self.try_acquire_batch()
        try:
            yield acquired
        finally:
            if acquired:
                self.release_batch()
