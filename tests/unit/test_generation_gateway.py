"""
generate-listing HTTP 호출기 테스트 (httpx.MockTransport 사용).
"""

import json

import httpx
import pydantic
import pytest

from autolister.schemas.generation import GenerationRequest, ProductAttributes, filter_image_urls
from autolister.services.ai.exceptions import (
    FatalProviderError,
    ProviderError,
    TransientProviderError,
    ValidationError,
)
from autolister.services.ai.providers.gateway import HttpListingGenerator
from autolister.services.ai.service import GenerationService
from autolister.services.collaborators import ImageRef

ENDPOINT = "https://functions.example.com/generate-listing"


def make_request(urls=None):
    return GenerationRequest(
        item_id="item-1",
        attributes=ProductAttributes(id="item-1", title="Old title"),
        image_urls=urls or ["https://cdn.example.com/1.jpg"],
    )


def make_generator(handler, max_attempts=2):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpListingGenerator(ENDPOINT, api_key="secret", max_attempts=max_attempts, retry_delay=0, client=client)


@pytest.mark.unit
class TestHttpListingGenerator:

    @pytest.mark.asyncio
    async def test_success_parses_generated_payload(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"generated": {"title": "Nike Windbreaker", "etsy_tags": ["90s", "nike"]}})

        result = await make_generator(handler).generate(make_request())

        assert result.title == "Nike Windbreaker"
        assert result.etsy_tags == "90s, nike"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["imageUrls"] == ["https://cdn.example.com/1.jpg"]
        assert seen["body"]["product"]["title"] == "Old title"

    @pytest.mark.asyncio
    async def test_transient_error_is_retried_once(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(503, json={"error": "busy"})
            return httpx.Response(200, json={"generated": {"title": "ok"}})

        result = await make_generator(handler).generate(make_request())

        assert result.title == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_retries(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(429, json={"error": "Rate limit exceeded"})

        with pytest.raises(TransientProviderError) as excinfo:
            await make_generator(handler).generate(make_request())

        assert len(calls) == 2
        assert excinfo.value.status_code == 429

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientProviderError):
            await make_generator(handler).generate(make_request())

    @pytest.mark.asyncio
    async def test_payment_required_is_fatal_and_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(402, json={})

        with pytest.raises(FatalProviderError) as excinfo:
            await make_generator(handler).generate(make_request())

        assert len(calls) == 1
        assert "credits" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_other_client_error_is_item_failure(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(400, json={"error": "Invalid image URLs"})

        with pytest.raises(ProviderError) as excinfo:
            await make_generator(handler).generate(make_request())

        assert not isinstance(excinfo.value, (TransientProviderError, FatalProviderError))
        assert excinfo.value.message == "Invalid image URLs"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_scalar_field_is_dropped_not_the_item(self):
        """객체 형태의 필드 하나만 버리고 나머지 필드는 유지."""
        def handler(request):
            return httpx.Response(200, json={"generated": {
                "title": "Wool coat",
                "material": "Wool",
                "era": {"decade": "90s"},
                "etsy_tags": ["coat", {"bad": 1}, "wool"],
            }})

        result = await make_generator(handler).generate(make_request())

        assert result.title == "Wool coat"
        assert result.material == "Wool"
        assert result.era is None
        assert result.etsy_tags == "coat, wool"

    @pytest.mark.asyncio
    async def test_missing_generated_object(self):
        def handler(request):
            return httpx.Response(200, json={"result": {}})

        with pytest.raises(ProviderError):
            await make_generator(handler).generate(make_request())

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(ProviderError):
            await make_generator(handler).generate(make_request())


@pytest.mark.unit
class TestGenerationRequest:

    def test_filter_image_urls(self):
        urls = ["blob:local/1", "https://a/1.jpg", None, "data:image/png;base64,xx", "http://b/2.jpg"]
        assert filter_image_urls(urls) == ["https://a/1.jpg", "http://b/2.jpg"]
        assert filter_image_urls([f"https://a/{i}.jpg" for i in range(12)], limit=9)[-1] == "https://a/8.jpg"

    def test_rejects_non_http_urls(self):
        with pytest.raises(pydantic.ValidationError):
            make_request(urls=["file:///tmp/1.jpg"])

    def test_rejects_more_than_nine_urls(self):
        with pytest.raises(pydantic.ValidationError):
            make_request(urls=[f"https://a/{i}.jpg" for i in range(10)])

    def test_service_rejects_items_without_valid_urls(self, make_product):
        service = GenerationService(generator=make_generator(lambda r: httpx.Response(200)))
        product = make_product(images=0)

        with pytest.raises(ValidationError) as excinfo:
            service.build_request(product, [ImageRef(id=1, url="blob:local/1")])
        assert excinfo.value.reason == "noValidImages"

    def test_service_orders_and_caps_urls(self, make_product):
        service = GenerationService(generator=make_generator(lambda r: httpx.Response(200)), max_image_urls=2)
        product = make_product(images=0, title="Tee")
        images = [
            ImageRef(id=3, url="https://a/3.jpg", position=2),
            ImageRef(id=1, url="https://a/1.jpg", position=0),
            ImageRef(id=2, url="https://a/2.jpg", position=1),
        ]

        request = service.build_request(product, images)

        assert request.image_urls == ["https://a/1.jpg", "https://a/2.jpg"]
        assert request.attributes.title == "Tee"
        assert request.item_id == str(product.id)

    def test_image_notes_are_sent_with_product_notes(self, make_product):
        """전송되는 이미지의 메모만 notes 에 중복 없이 덧붙임."""
        service = GenerationService(generator=make_generator(lambda r: httpx.Response(200)), max_image_urls=2)
        product = make_product(images=0, notes="Shot on rail 3")
        images = [
            ImageRef(id=1, url="https://a/1.jpg", position=0, note="small hole on left cuff"),
            ImageRef(id=2, url="https://a/2.jpg", position=1, note="Shot on rail 3"),
            ImageRef(id=3, url="https://a/3.jpg", position=2, note="not sent"),
        ]

        request = service.build_request(product, images)

        assert request.attributes.notes == "Shot on rail 3\nsmall hole on left cuff"
        assert product.notes == "Shot on rail 3"

    def test_notes_untouched_without_image_notes(self, make_product):
        service = GenerationService(generator=make_generator(lambda r: httpx.Response(200)))
        product = make_product(images=0, notes=None)

        request = service.build_request(product, [ImageRef(id=1, url="https://a/1.jpg")])

        assert request.attributes.notes is None
