"""
Field Merge & Sanitization

생성 서비스가 돌려준 신뢰할 수 없는 payload 를 검증된 필드 업데이트로 변환합니다.

- 직접 덮어쓰기: 비어있지 않은 값만 반영 (문자열 "null" 포함 빈값 무시)
- 검증 덮어쓰기: era / department 는 허용 값으로 정규화되지 않으면 무시
- 복합 파싱: "Very good (minor bobbling)" → condition + flaws
- 파생 값: 기존 가격이 없을 때만 병합된 속성으로 가격 산정
- 식별자: garment_type 확정 후 SKU 생성, 실패 시 notes 에 검토 표시
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from autolister.schemas.generation import GeneratedListing
from autolister.services.collaborators import (
    PricingContext,
    PricingPolicy,
    SkuGenerator,
    SkuResult,
    TagRules,
)
from autolister.settings import settings

logger = logging.getLogger(__name__)

ERA_VALUES = ("80s", "90s", "Y2K", "Modern")
DEPARTMENT_VALUES = ("Women", "Men", "Unisex", "Kids")
CONDITION_LABELS = ("Excellent", "Very good", "Good", "Fair")

# 값이 있으면 그대로 덮어쓰는 필드
DIRECT_FIELDS = (
    "title",
    "description",
    "description_style_a",
    "description_style_b",
    "etsy_tags",
    "collections_tags",
    "garment_type",
    "brand",
    "colour_main",
    "colour_secondary",
    "pattern",
    "size_recommended",
    "pit_to_pit",
    "fit",
    "material",
    "flaws",
    "made_in",
)

SKU_PLACEHOLDER_PREFIX = "SKU-"

_CONDITION_PATTERN = re.compile(r"^\s*(excellent|very good|good|fair)\s*\((.*)\)\s*$", re.IGNORECASE | re.DOTALL)
# "boyfriend" 같은 성인 의류 표현은 제외
_KIDS_PATTERN = re.compile(r"\b(kids?|child|children|boys?|girls?|baby|babies|junior|juniors|toddler)\b")

_ERA_ALIASES = {
    "80s": "80s",
    "1980s": "80s",
    "eighties": "80s",
    "90s": "90s",
    "1990s": "90s",
    "nineties": "90s",
    "y2k": "Y2K",
    "2000s": "Y2K",
    "modern": "Modern",
    "contemporary": "Modern",
}


def is_present(value: Any) -> bool:
    if value is None:
        return False
    text = str(value).strip()
    return bool(text) and text.lower() != "null"


def normalize_era(value: Optional[str]) -> Optional[str]:
    if not is_present(value):
        return None
    lowered = value.strip().lower()
    if lowered in _ERA_ALIASES:
        return _ERA_ALIASES[lowered]

    # 부분 문자열 휴리스틱
    if "y2k" in lowered or "2000" in lowered:
        return "Y2K"
    if "90" in lowered:
        return "90s"
    if "80" in lowered:
        return "80s"
    if "modern" in lowered or "contemporary" in lowered:
        return "Modern"
    return None


def normalize_department(value: Optional[str]) -> Optional[str]:
    if not is_present(value):
        return None
    lowered = value.strip().lower()
    for canonical in DEPARTMENT_VALUES:
        if lowered == canonical.lower():
            return canonical

    # "women" 이 "men" 을 포함하므로 순서가 중요
    if "unisex" in lowered:
        return "Unisex"
    if _KIDS_PATTERN.search(lowered):
        return "Kids"
    if any(word in lowered for word in ("women", "woman", "ladies", "female")):
        return "Women"
    if "men" in lowered or "male" in lowered:
        return "Men"
    return None


def sanitize_condition(value: Optional[str]) -> Optional[Dict[str, str]]:
    """
    "Very good (minor bobbling)" → {"condition": "Very good", "flaws": "minor bobbling"}
    괄호가 없으면 허용 라벨을 포함하는지로 판단 (긴 라벨 우선).
    """
    if not is_present(value):
        return None

    match = _CONDITION_PATTERN.match(value)
    if match:
        label = _canonical_condition(match.group(1))
        detail = match.group(2).strip()
        result = {"condition": label}
        if detail:
            result["flaws"] = detail
        return result

    lowered = value.lower()
    for label in sorted(CONDITION_LABELS, key=len, reverse=True):
        if label.lower() in lowered:
            return {"condition": label}
    return None


def _canonical_condition(raw: str) -> str:
    normalized = " ".join(raw.lower().split())
    for label in CONDITION_LABELS:
        if label.lower() == normalized:
            return label
    return raw.strip().capitalize()


def _split_tags(value: Union[str, Iterable[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(",")
    else:
        parts = list(value)
    return [p.strip() for p in parts if p and p.strip()]


def merge_tags(*groups: Union[str, Iterable[str], None]) -> str:
    """
    여러 태그 묶음을 대소문자 무시 중복 제거 후 ", " 로 결합 (먼저 나온 표기 유지)
    """
    seen = set()
    merged: List[str] = []
    for group in groups:
        for tag in _split_tags(group):
            key = tag.lower()
            if key in seen:
                continue
            seen.add(key)
            merged.append(tag)
    return ", ".join(merged)


class FieldMergeEngine:
    def __init__(
        self,
        pricing: Optional[PricingPolicy] = None,
        sku_generator: Optional[SkuGenerator] = None,
        tag_rules: Optional[TagRules] = None,
        sku_review_marker: Optional[str] = None,
    ):
        self.pricing = pricing
        self.sku_generator = sku_generator
        self.tag_rules = tag_rules
        self.sku_review_marker = sku_review_marker or settings.sku_review_marker

    async def merge(self, current: Any, generated: GeneratedListing) -> Dict[str, Any]:
        """
        현재 상품과 생성 결과로부터 저장할 필드 업데이트를 계산합니다.
        current 는 변경하지 않습니다.
        """
        payload = generated.model_dump()
        updates: Dict[str, Any] = {}

        for name in DIRECT_FIELDS:
            value = payload.get(name)
            if is_present(value):
                updates[name] = value.strip()

        era = normalize_era(payload.get("era"))
        if era:
            updates["era"] = era

        department = normalize_department(payload.get("department"))
        if department:
            updates["department"] = department

        condition = sanitize_condition(payload.get("condition"))
        if condition:
            updates.update(condition)

        shopify_tags = self._merge_shopify_tags(current, payload, updates)
        if shopify_tags:
            updates["shopify_tags"] = shopify_tags

        merged_view = self._merged_view(current, updates)

        price = self._derive_price(current, merged_view)
        if price is not None:
            updates["price"] = price

        await self._resolve_sku(current, merged_view, updates)

        updates["status"] = "generated"
        return updates

    def _merged_view(self, current: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
        keys = set(DIRECT_FIELDS) | {"era", "department", "condition", "sku", "size_label", "notes", "price", "shopify_tags"}
        view = {key: getattr(current, key, None) for key in keys}
        view.update(updates)
        return view

    def _merge_shopify_tags(self, current: Any, payload: Dict[str, Any], updates: Dict[str, Any]) -> str:
        base_tags = payload.get("shopify_tags") if is_present(payload.get("shopify_tags")) else getattr(current, "shopify_tags", None)
        if self.tag_rules is None:
            return merge_tags(base_tags)

        garment_type = getattr(current, "garment_type", None) or updates.get("garment_type") or ""
        department = getattr(current, "department", None) or updates.get("department") or ""
        default_tags = self.tag_rules.get_matching_tags(
            garment_type,
            department,
            title=updates.get("title") or getattr(current, "title", None) or "",
            description=updates.get("description_style_a") or "",
            notes=getattr(current, "notes", None) or "",
        )
        return merge_tags(base_tags, default_tags)

    def _derive_price(self, current: Any, merged: Dict[str, Any]) -> Optional[float]:
        existing = getattr(current, "price", None)
        if existing is not None and existing > 0:
            return None
        if self.pricing is None:
            return None

        context = PricingContext(
            brand=merged.get("brand"),
            material=merged.get("material"),
            condition=merged.get("condition"),
            tags=merged.get("collections_tags"),
            title=merged.get("title"),
            style=merged.get("era"),
        )
        try:
            price = self.pricing.suggest_price(merged.get("garment_type"), context)
        except Exception as e:
            logger.warning(f"[AI] Price suggestion failed for {getattr(current, 'id', '?')}: {e}")
            return None
        if price is None or price <= 0:
            return None
        return round(float(price), 2)

    async def _resolve_sku(self, current: Any, merged: Dict[str, Any], updates: Dict[str, Any]) -> None:
        existing = (getattr(current, "sku", None) or "").strip()
        if existing and not existing.startswith(SKU_PLACEHOLDER_PREFIX):
            return
        garment_type = merged.get("garment_type")
        if not is_present(garment_type) or self.sku_generator is None:
            return

        try:
            result = await self.sku_generator.generate(
                garment_type,
                merged.get("size_recommended"),
                merged.get("era"),
                merged.get("size_label"),
            )
        except Exception as e:
            result = SkuResult(error=str(e) or e.__class__.__name__)

        if result.sku:
            updates["sku"] = result.sku
            return

        reason = result.error or "SKU could not be generated"
        notes = updates.get("notes", getattr(current, "notes", None)) or ""
        if self.sku_review_marker in notes:
            return
        annotation = f"{self.sku_review_marker} {reason}"
        updates["notes"] = f"{notes}\n{annotation}" if notes else annotation
        logger.warning(f"[AI] SKU needs review for {getattr(current, 'id', '?')}: {reason}")
