import logging
import asyncio
from typing import Callable, Dict, List, Any

logger = logging.getLogger(__name__)

GENERATION_PROGRESS = "generation.progress"
GENERATION_SUMMARY = "generation.summary"
AUTOPILOT_AWAITING_QC = "autopilot.awaiting_qc"
AUTOPILOT_STOPPED = "autopilot.stopped"


class EventBus:
    """
    진행 상황/완료 통지를 위한 경량 이벤트 버스.
    핸들러 오류는 로그로만 남기고 발행자에게 전파하지 않습니다.
    """
    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, handler: Callable):
        """이벤트 구독 등록"""
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)
        logger.debug(f"[EVENT] Subscribed to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event_type: str, data: Any):
        """이벤트 발행"""
        logger.debug(f"[EVENT] Publishing {event_type}")
        handlers = self._handlers.get(event_type, [])
        if not handlers:
            return

        tasks = []
        for handler in list(handlers):
            try:
                if asyncio.iscoroutinefunction(handler):
                    tasks.append(handler(data))
                else:
                    handler(data)
            except Exception as e:
                logger.error(f"[EVENT] Error in handler for {event_type}: {e}")

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for res in results:
                if isinstance(res, Exception):
                    logger.error(f"[EVENT] Exception in async handler: {res}")


# 싱글톤 인스턴스
bus = EventBus()
