import asyncio
import logging
from typing import Any, Optional, Set

import httpx

from autolister.settings import settings

logger = logging.getLogger(__name__)


class WorkerDispatcher:
    """
    오토파일럿 워커 호출 (fire-and-forget).
    응답을 기다리지 않으며 실패는 로그로만 남깁니다. 진행 상황은 폴링으로 확인합니다.
    """

    def __init__(
        self,
        worker_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.worker_url = worker_url or settings.autopilot_worker_url
        self.api_key = settings.generation_api_key if api_key is None else api_key
        self._transport = transport
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, run_id: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._post(run_id))
        # 태스크가 GC 되지 않도록 참조 유지
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _post(self, run_id: Any) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
                resp = await client.post(self.worker_url, json={"run_id": str(run_id)}, headers=headers)
            if resp.status_code >= 400:
                logger.error(f"[Autopilot] Worker dispatch for run {run_id} failed: HTTP {resp.status_code} {resp.text[:200]}")
            else:
                logger.info(f"[Autopilot] Worker dispatched for run {run_id}")
        except httpx.HTTPError as e:
            logger.error(f"[Autopilot] Error triggering batch processing for run {run_id}: {e}")
