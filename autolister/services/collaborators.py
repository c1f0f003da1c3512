"""
외부 협력자 인터페이스.

가격 정책, SKU 생성, 기본 태그 규칙, 이미지 저장소, 영속화 계층은
오케스트레이터 입장에서 불투명한 호출로만 취급됩니다.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class PricingContext:
    brand: Optional[str] = None
    material: Optional[str] = None
    condition: Optional[str] = None
    tags: Optional[str] = None
    title: Optional[str] = None
    style: Optional[str] = None


@dataclass(frozen=True)
class SkuResult:
    sku: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ImageRef:
    id: Any
    url: str
    position: int = 0
    note: Optional[str] = None


@dataclass(frozen=True)
class Placement:
    """구조 변경 직전의 이미지 위치 (undo 용)"""
    entity_id: Any
    previous_parent_id: Any
    previous_position: int


class PricingPolicy(Protocol):
    def suggest_price(self, garment_type: Optional[str], context: PricingContext) -> Optional[float]:
        ...


class SkuGenerator(Protocol):
    async def generate(
        self,
        garment_type: str,
        size_recommended: Optional[str],
        era: Optional[str],
        size_label: Optional[str],
    ) -> SkuResult:
        ...


class TagRules(Protocol):
    def get_matching_tags(
        self,
        garment_type: str,
        department: str = "",
        title: str = "",
        description: str = "",
        notes: str = "",
    ) -> List[str]:
        ...


class ImageStore(Protocol):
    async def fetch_images(self, item_id: Any) -> List[ImageRef]:
        ...


class ProductPersistence(Protocol):
    async def update(self, item_id: Any, fields: Dict[str, Any]) -> bool:
        ...


class PlacementStore(Protocol):
    async def fetch_placements(self, image_ids: List[Any]) -> List[Placement]:
        ...

    async def write_placement(self, placement: Placement) -> bool:
        ...

    async def move_image(self, image_id: Any, product_id: Any, position: int) -> bool:
        ...
