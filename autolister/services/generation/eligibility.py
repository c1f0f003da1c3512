import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple

from autolister.services.ai.exceptions import PersistenceError, wrap_exception
from autolister.services.collaborators import ImageRef, ImageStore

logger = logging.getLogger(__name__)

# 이미 AI 생성이 끝난 것으로 간주하는 상품 상태
ENRICHED_STATUSES = frozenset({"generated", "ready_for_shopify", "created_in_shopify"})


@dataclass
class EligibilityResult:
    eligible: List[Any]
    already_enriched_count: int = 0
    explicit: bool = False


@dataclass
class ImageSplit:
    ready: List[Tuple[Any, List[ImageRef]]] = field(default_factory=list)
    missing: List[Any] = field(default_factory=list)
    errors: List[Tuple[Any, str]] = field(default_factory=list)


def is_deleted(item: Any) -> bool:
    return getattr(item, "deleted_at", None) is not None


def initial_enriched_ids(items: Iterable[Any]) -> set:
    return {item.id for item in items if item.status in ENRICHED_STATUSES}


def select_eligible(
    items: Iterable[Any],
    selected_ids: Optional[Iterable[Any]] = None,
    locked_ids: Iterable[Any] = frozenset(),
    enriched_ids: Iterable[Any] = frozenset(),
) -> EligibilityResult:
    """
    생성 후보 선별.

    - 명시적 선택이 있으면 선택된 모든 상품이 대상 (재생성 허용)
    - 없으면 status == "new" 이면서 미생성, 미잠금 상품만 대상
    - 소프트 삭제된 상품은 항상 제외
    """
    live = [item for item in items if not is_deleted(item)]
    enriched = set(enriched_ids)

    selection = list(selected_ids) if selected_ids is not None else []
    if selection:
        wanted = set(selection)
        eligible = [item for item in live if item.id in wanted]
        return EligibilityResult(eligible=eligible, explicit=True)

    locked = set(locked_ids)
    eligible = [
        item for item in live
        if item.status == "new" and item.id not in enriched and item.id not in locked
    ]
    already = sum(1 for item in live if item.id in enriched)
    return EligibilityResult(eligible=eligible, already_enriched_count=already)


async def split_by_images(items: List[Any], image_store: ImageStore) -> ImageSplit:
    """
    대상 전체의 이미지를 동시에 조회해 이미지 없는 상품을 네트워크 호출 전에 분리합니다.
    """
    split = ImageSplit()
    if not items:
        return split

    results = await asyncio.gather(
        *(image_store.fetch_images(item.id) for item in items),
        return_exceptions=True,
    )
    for item, result in zip(items, results):
        if isinstance(result, Exception):
            wrapped = wrap_exception(result, PersistenceError, table_name="product_images", operation="select")
            logger.error(f"[AI] Failed to fetch images for {item.id}: {wrapped}")
            split.errors.append((item, wrapped.message))
        elif not result:
            logger.warning(f"[AI] Product {item.id} has no images, skipping")
            split.missing.append(item)
        else:
            split.ready.append((item, list(result)))
    return split
