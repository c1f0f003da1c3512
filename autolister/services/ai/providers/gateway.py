import logging
from typing import Any, Dict, Optional

import httpx
import pydantic
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from autolister.schemas.generation import GeneratedListing, GenerationRequest
from autolister.services.ai.base import ListingGenerator
from autolister.services.ai.exceptions import (
    FatalProviderError,
    ProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

FATAL_STATUS_CODES = {401, 402, 403}


class HttpListingGenerator(ListingGenerator):
    """
    generate-listing 엔드포인트 호출기.

    타임아웃 없이 호출하며, 일시적 오류(429/5xx/네트워크)만 고정 간격으로 재시도합니다.
    크레딧/인증 오류는 FatalProviderError 로 즉시 전파합니다.
    """

    def __init__(
        self,
        endpoint_url: str,
        api_key: str = "",
        max_attempts: int = 2,
        retry_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint_url = endpoint_url
        self.api_key = api_key
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def generate(self, request: GenerationRequest) -> GeneratedListing:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(TransientProviderError),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"[AI] generate-listing 재시도 중... item={request.item_id} "
                f"({retry_state.attempt_number}회째): {retry_state.outcome.exception()}"
            ),
        ):
            with attempt:
                return await self._post(request)

    async def _post(self, request: GenerationRequest) -> GeneratedListing:
        logger.info(f"[AI] Calling generate-listing for {request.item_id} with {len(request.image_urls)} images")
        try:
            resp = await self._get_client().post(
                self.endpoint_url,
                json=request.to_payload(),
                headers=self._headers(),
            )
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"Network error calling generation service: {e}",
                url=self.endpoint_url,
                item_id=request.item_id,
            ) from e

        if resp.status_code >= 400:
            self._raise_for_status(resp, request.item_id)

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(
                "Generation service returned a non-JSON body",
                status_code=resp.status_code,
                url=self.endpoint_url,
                response_body=resp.text[:500],
                recoverable=False,
            ) from e

        generated = data.get("generated") if isinstance(data, dict) else None
        if not isinstance(generated, dict):
            raise ProviderError(
                "Generation response is missing the 'generated' object",
                status_code=resp.status_code,
                url=self.endpoint_url,
                response_body=resp.text[:500],
                recoverable=False,
            )

        try:
            return GeneratedListing.model_validate(generated)
        except pydantic.ValidationError as e:
            raise ProviderError(
                f"Malformed generated payload: {e.error_count()} invalid field(s)",
                status_code=resp.status_code,
                url=self.endpoint_url,
                recoverable=False,
            ) from e

    def _raise_for_status(self, resp: httpx.Response, item_id: str) -> None:
        message = self._error_message(resp)
        status = resp.status_code
        kwargs: Dict[str, Any] = {
            "status_code": status,
            "url": self.endpoint_url,
            "response_body": resp.text[:500],
            "item_id": item_id,
        }
        if status == 429:
            raise TransientProviderError(message or "Rate limit exceeded. Please try again later.", **kwargs)
        if status >= 500:
            raise TransientProviderError(message or f"Generation service error (HTTP {status})", **kwargs)
        if status in FATAL_STATUS_CODES:
            if status == 402:
                message = message or "AI credits exhausted. Please add credits to continue."
            raise FatalProviderError(message or f"Generation service rejected credentials (HTTP {status})", **kwargs)
        raise ProviderError(message or f"Generation failed (HTTP {status})", recoverable=False, **kwargs)

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return ""
        if isinstance(body, dict):
            return str(body.get("error") or "")
        return ""
