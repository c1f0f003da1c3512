from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass(frozen=True)
class FailureRecord:
    item_id: Any
    human_label: str
    error_reason: str


class FailureTracker:
    """실패한 상품만 모아두고 재시도 대상으로 제공합니다. 성공 시 제거, 재실패 시 교체."""

    def __init__(self):
        self._records: Dict[Any, FailureRecord] = {}

    def record(self, item_id: Any, human_label: str, error_reason: str) -> FailureRecord:
        record = FailureRecord(item_id=item_id, human_label=human_label, error_reason=error_reason)
        self._records[item_id] = record
        return record

    def resolve(self, item_id: Any) -> None:
        self._records.pop(item_id, None)

    def clear(self) -> None:
        self._records.clear()

    def get(self, item_id: Any) -> FailureRecord | None:
        return self._records.get(item_id)

    @property
    def ids(self) -> List[Any]:
        return list(self._records)

    @property
    def records(self) -> List[FailureRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, item_id: Any) -> bool:
        return item_id in self._records
