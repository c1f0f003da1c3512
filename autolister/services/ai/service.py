import logging
from typing import Any, List, Optional

from autolister.schemas.generation import (
    GeneratedListing,
    GenerationRequest,
    ProductAttributes,
    filter_image_urls,
)
from autolister.services.ai.base import ListingGenerator
from autolister.services.ai.exceptions import ValidationError
from autolister.services.ai.providers.gateway import HttpListingGenerator
from autolister.services.collaborators import ImageRef
from autolister.settings import settings

logger = logging.getLogger(__name__)


def merge_image_notes(notes: Optional[str], images: List[ImageRef], sent_urls: List[str]) -> Optional[str]:
    """
    업로드 시 이미지에 붙여 둔 메모를 상품 notes 뒤에 덧붙임.
    실제로 전송되는 이미지의 메모만, 중복 없이 순서대로 사용합니다.
    """
    sent = set(sent_urls)
    existing = [line.strip() for line in (notes or "").splitlines()]
    added: List[str] = []
    for img in images:
        note = (img.note or "").strip()
        if note and img.url and img.url.strip() in sent and note not in existing and note not in added:
            added.append(note)
    if not added:
        return notes
    return "\n".join([notes] + added) if notes else "\n".join(added)


class GenerationService:
    """
    상품 한 건에 대한 생성 요청을 구성하고 생성기를 호출합니다.
    이미지 URL 정제는 네트워크 호출 전에 수행합니다.
    """

    def __init__(self, generator: Optional[ListingGenerator] = None, max_image_urls: Optional[int] = None):
        self.generator = generator or HttpListingGenerator(
            endpoint_url=settings.generation_endpoint_url,
            api_key=settings.generation_api_key,
            max_attempts=settings.generation_max_attempts,
            retry_delay=settings.generation_retry_delay,
        )
        self.max_image_urls = max_image_urls or settings.generation_max_image_urls

    def build_request(self, product: Any, images: List[ImageRef]) -> GenerationRequest:
        ordered = sorted(images, key=lambda img: img.position)
        urls = filter_image_urls([img.url for img in ordered], limit=self.max_image_urls)
        if not urls:
            raise ValidationError(
                f"Product {product.id} has no valid http(s) image URLs",
                reason="noValidImages",
                field="image_urls",
                item_id=str(product.id),
            )
        attributes = ProductAttributes.model_validate(product)
        notes = merge_image_notes(attributes.notes, ordered, urls)
        if notes != attributes.notes:
            attributes = attributes.model_copy(update={"notes": notes})
        return GenerationRequest(
            item_id=str(product.id),
            attributes=attributes,
            image_urls=urls,
        )

    async def generate(self, product: Any, images: List[ImageRef]) -> GeneratedListing:
        request = self.build_request(product, images)
        generated = await self.generator.generate(request)
        logger.info(
            f"[AI] Generated content for {request.item_id}: "
            f"title={(generated.title or '')[:50]!r}, "
            f"descA={bool(generated.description_style_a)}, descB={bool(generated.description_style_b)}"
        )
        return generated
