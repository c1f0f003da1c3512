from typing import Iterable, List, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from autolister.models import DefaultTag


class DefaultTagRules:
    """
    의류 종류별로 자동 부여되는 기본 태그.
    assigned_garment_types 중 하나가 garment_type 과 (소문자/공백 정리 후) 일치하면 부여합니다.
    """

    def __init__(self, tags: Iterable[Tuple[str, Iterable[str]]]):
        self._tags: List[Tuple[str, List[str]]] = sorted(
            ((name, [t.lower().strip() for t in types if t]) for name, types in tags),
            key=lambda pair: pair[0].lower(),
        )

    @classmethod
    def from_db(cls, db: Session) -> "DefaultTagRules":
        rows = db.scalars(select(DefaultTag)).all()
        return cls((row.tag_name, row.assigned_garment_types or []) for row in rows)

    def get_matching_tags(
        self,
        garment_type: str,
        department: str = "",
        title: str = "",
        description: str = "",
        notes: str = "",
    ) -> List[str]:
        normalized = (garment_type or "").lower().strip()
        if not normalized:
            return []
        return [name for name, types in self._tags if normalized in types]
