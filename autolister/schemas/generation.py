from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional

URL_SCHEMES = ("http://", "https://")


def filter_image_urls(urls: List[Optional[str]], limit: int = 9) -> List[str]:
    """http/https 가 아닌 참조(로컬 경로, data: URI 등)를 제거하고 최대 limit 개만 남김"""
    valid = [u.strip() for u in urls if isinstance(u, str) and u.strip().lower().startswith(URL_SCHEMES)]
    return valid[:limit]


class ProductAttributes(BaseModel):
    """생성 요청에 실어 보내는 상품 속성"""
    id: str
    sku: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    garment_type: Optional[str] = None
    department: Optional[str] = None
    brand: Optional[str] = None
    colour_main: Optional[str] = None
    colour_secondary: Optional[str] = None
    pattern: Optional[str] = None
    size_label: Optional[str] = None
    size_recommended: Optional[str] = None
    fit: Optional[str] = None
    material: Optional[str] = None
    condition: Optional[str] = None
    flaws: Optional[str] = None
    made_in: Optional[str] = None
    era: Optional[str] = None
    notes: Optional[str] = None
    raw_input_text: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> str:
        return str(v)


class GenerationRequest(BaseModel):
    item_id: str
    attributes: ProductAttributes
    image_urls: List[str] = Field(default_factory=list, max_length=9)

    @field_validator("image_urls")
    @classmethod
    def validate_image_urls(cls, v: List[str]) -> List[str]:
        for url in v:
            if not url.lower().startswith(URL_SCHEMES):
                raise ValueError(f"Image URL must be http/https: {url[:60]}")
        return v

    def to_payload(self) -> Dict[str, Any]:
        return {
            "product": self.attributes.model_dump(),
            "imageUrls": self.image_urls,
        }


class GeneratedListing(BaseModel):
    """
    생성 서비스 응답의 `generated` 객체.
    신뢰할 수 없는 입력이므로 모든 필드를 선택값으로 받고 문자열로 정규화합니다.
    """
    title: Optional[str] = None
    description: Optional[str] = None
    description_style_a: Optional[str] = None
    description_style_b: Optional[str] = None
    shopify_tags: Optional[str] = None
    etsy_tags: Optional[str] = None
    collections_tags: Optional[str] = None
    garment_type: Optional[str] = None
    department: Optional[str] = None
    era: Optional[str] = None
    brand: Optional[str] = None
    colour_main: Optional[str] = None
    colour_secondary: Optional[str] = None
    pattern: Optional[str] = None
    size_recommended: Optional[str] = None
    pit_to_pit: Optional[str] = None
    fit: Optional[str] = None
    material: Optional[str] = None
    condition: Optional[str] = None
    flaws: Optional[str] = None
    made_in: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def coerce_to_text(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, bool):
            return str(v).lower()
        if isinstance(v, (int, float)):
            return str(v)
        if isinstance(v, list):
            parts = [str(x).strip() for x in v if isinstance(x, (str, int, float)) and str(x).strip()]
            return ", ".join(parts) or None
        # 객체 등 해석할 수 없는 값은 해당 필드만 버림
        return None
