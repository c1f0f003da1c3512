import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from autolister.models import AutopilotRun, Product
from autolister.services.ai.exceptions import (
    PersistenceError,
    ValidationError,
    WorkflowError,
    wrap_exception,
)
from autolister.services.events import AUTOPILOT_AWAITING_QC, AUTOPILOT_STOPPED, EventBus, bus
from autolister.services.product_store import as_uuid
from autolister.services.worker_dispatch import WorkerDispatcher
from autolister.settings import settings

logger = logging.getLogger(__name__)

RUN_TRANSITIONS: Dict[str, set] = {
    "running": {"awaiting_qc", "failed"},
    "awaiting_qc": {"publishing", "failed"},
    "publishing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}
TERMINAL_RUN_STATES = frozenset({"completed", "failed"})

QC_TRANSITIONS: Dict[str, set] = {
    "draft": {"generating"},
    "generating": {"ready", "needs_review", "blocked", "failed"},
    "ready": {"approved"},
    "needs_review": {"approved"},
    "blocked": {"approved"},
    "failed": {"approved"},
    "approved": {"published"},
    "published": set(),
}
APPROVABLE_QC_STATES = frozenset({"ready", "needs_review", "blocked", "failed"})

STOPPED_BY_USER = "Stopped by user"


@dataclass
class StartResult:
    run: AutopilotRun
    resumed: bool = False


@dataclass
class QCActionResult:
    updated: List[Any] = field(default_factory=list)
    skipped: List[Any] = field(default_factory=list)


class AutopilotService:
    """
    오토파일럿 실행 상태 머신.

    running → awaiting_qc → publishing → completed
    running/awaiting_qc/publishing → failed (중지 또는 오류)
    """

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[WorkerDispatcher] = None,
        event_bus: EventBus = bus,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.dispatcher = dispatcher or WorkerDispatcher()
        self.bus = event_bus
        self.poll_interval = settings.autopilot_poll_interval if poll_interval is None else poll_interval
        self._sleep = sleep

    def _get_run(self, run_id: Any) -> AutopilotRun:
        run = self.db.get(AutopilotRun, as_uuid(run_id))
        if run is None:
            raise WorkflowError(f"Autopilot run {run_id} not found", workflow_name="autopilot", step="lookup")
        return run

    def _transition(self, run: AutopilotRun, target: str) -> None:
        allowed = RUN_TRANSITIONS.get(run.status, set())
        if target not in allowed:
            raise WorkflowError(
                f"Illegal autopilot transition {run.status} -> {target}",
                workflow_name="autopilot",
                step=target,
                state={"run_id": str(run.id), "status": run.status},
            )
        logger.info(f"[Autopilot] Run {run.id}: {run.status} -> {target}")
        run.status = target

    def _commit(self, table_name: str, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            wrapped = wrap_exception(e, PersistenceError, table_name=table_name, operation=operation)
            logger.error(f"[Autopilot] Commit failed: {wrapped}")
            raise wrapped from e

    def find_running_run(self, batch_id: Any) -> Optional[AutopilotRun]:
        stmt = (
            select(AutopilotRun)
            .where(AutopilotRun.batch_id == as_uuid(batch_id))
            .where(AutopilotRun.status == "running")
            .order_by(AutopilotRun.created_at.desc())
        )
        return self.db.scalars(stmt).first()

    async def start(self, batch_id: Any) -> StartResult:
        """
        배치에 대한 실행을 시작합니다. 이미 running 인 실행이 있으면 그대로 재개합니다.
        """
        existing = self.find_running_run(batch_id)
        if existing is not None:
            logger.info(f"[Autopilot] Resuming existing run {existing.id} for batch {batch_id}")
            return StartResult(run=existing, resumed=True)

        batch_uuid = as_uuid(batch_id)
        total = self.db.scalar(
            select(func.count(Product.id))
            .where(Product.batch_id == batch_uuid)
            .where(Product.deleted_at.is_(None))
        ) or 0
        if total == 0:
            raise ValidationError("No products found in batch", reason="emptyBatch", field="batch_id")

        run = AutopilotRun(
            batch_id=batch_uuid,
            status="running",
            batch_size=settings.autopilot_batch_size,
            total_cards=total,
            processed_cards=0,
            current_batch=0,
        )
        self.db.add(run)
        self.db.flush()

        self.db.execute(
            update(Product)
            .where(Product.batch_id == batch_uuid)
            .where(Product.deleted_at.is_(None))
            .values(
                qc_status="draft",
                run_id=run.id,
                flags={},
                confidence=None,
                batch_number=None,
                generated_at=None,
            )
            .execution_options(synchronize_session="fetch")
        )
        self._commit("autopilot_runs", "insert")
        logger.info(f"[Autopilot] Created run {run.id} for batch {batch_id} with {total} products")

        # 워커 응답은 기다리지 않음
        self.dispatcher.dispatch(run.id)
        return StartResult(run=run, resumed=False)

    async def stop(self, run_id: Any) -> AutopilotRun:
        run = self._get_run(run_id)
        self._transition(run, "failed")
        run.last_error = STOPPED_BY_USER

        # 보상 작업: 생성 중이던 상품을 draft 로 되돌림
        self.db.execute(
            update(Product)
            .where(Product.run_id == run.id)
            .where(Product.qc_status == "generating")
            .values(qc_status="draft")
            .execution_options(synchronize_session="fetch")
        )
        self._commit("autopilot_runs", "update")
        logger.info(f"[Autopilot] Run {run.id} stopped by user")
        await self.bus.publish(AUTOPILOT_STOPPED, run)
        return run

    def record_progress(self, run_id: Any, processed_cards: int, current_batch: Optional[int] = None) -> AutopilotRun:
        """
        워커가 보고한 진행 상황 반영. processed_cards 는 감소할 수 없고 total_cards 를 넘을 수 없습니다.
        전체 처리 시 awaiting_qc 로 전이합니다.
        """
        run = self._get_run(run_id)
        if run.status != "running":
            raise WorkflowError(
                f"Cannot record progress for run in status {run.status}",
                workflow_name="autopilot",
                step="progress",
                state={"run_id": str(run.id), "status": run.status},
            )
        if processed_cards < run.processed_cards:
            raise WorkflowError(
                f"processed_cards cannot decrease ({run.processed_cards} -> {processed_cards})",
                workflow_name="autopilot",
                step="progress",
            )
        if processed_cards > run.total_cards:
            raise ValidationError(
                f"processed_cards {processed_cards} exceeds total_cards {run.total_cards}",
                field="processed_cards",
            )

        run.processed_cards = processed_cards
        if current_batch is not None:
            run.current_batch = max(run.current_batch, current_batch)
        if run.processed_cards == run.total_cards:
            self._transition(run, "awaiting_qc")
        self._commit("autopilot_runs", "update")
        return run

    def fail(self, run_id: Any, error: str) -> AutopilotRun:
        run = self._get_run(run_id)
        self._transition(run, "failed")
        run.last_error = error
        self._commit("autopilot_runs", "update")
        return run

    def begin_publishing(self, run_id: Any) -> AutopilotRun:
        run = self._get_run(run_id)
        self._transition(run, "publishing")
        self._commit("autopilot_runs", "update")
        return run

    def complete(self, run_id: Any) -> AutopilotRun:
        run = self._get_run(run_id)
        self._transition(run, "completed")
        self._commit("autopilot_runs", "update")
        return run

    async def watch_run(self, run_id: Any, max_polls: Optional[int] = None) -> AutopilotRun:
        """
        running 인 동안 주기적으로 실행 기록을 다시 읽습니다.
        awaiting_qc 에 도달하면 알림을 발행합니다.
        """
        polls = 0
        while True:
            run = self.db.get(AutopilotRun, as_uuid(run_id), populate_existing=True)
            if run is None:
                raise WorkflowError(f"Autopilot run {run_id} not found", workflow_name="autopilot", step="poll")
            if run.status != "running":
                if run.status == "awaiting_qc":
                    logger.info(f"[Autopilot] Autopilot complete! Ready for QC review. (run {run.id})")
                    await self.bus.publish(AUTOPILOT_AWAITING_QC, run)
                return run

            polls += 1
            if max_polls is not None and polls >= max_polls:
                return run
            await self._sleep(self.poll_interval)

    def transition_qc(self, product_id: Any, target: str) -> Product:
        product = self.db.get(Product, as_uuid(product_id))
        if product is None:
            raise WorkflowError(f"Product {product_id} not found", workflow_name="qc", step=target)
        current = product.qc_status or "draft"
        if target not in QC_TRANSITIONS.get(current, set()):
            raise WorkflowError(
                f"Illegal QC transition {current} -> {target}",
                workflow_name="qc",
                step=target,
                state={"product_id": str(product.id), "qc_status": current},
            )
        product.qc_status = target
        self._commit("products", "update")
        return product

    def approve_products(self, product_ids: Iterable[Any]) -> QCActionResult:
        result = QCActionResult()
        for product in self._load_products(product_ids):
            if product.qc_status in APPROVABLE_QC_STATES:
                product.qc_status = "approved"
                result.updated.append(product.id)
            else:
                result.skipped.append(product.id)
        self._commit("products", "update")
        logger.info(f"[Autopilot] Approved {len(result.updated)} product(s), skipped {len(result.skipped)}")
        return result

    def send_to_draft(self, product_ids: Iterable[Any]) -> QCActionResult:
        result = QCActionResult()
        for product in self._load_products(product_ids):
            product.qc_status = "draft"
            product.flags = {}
            product.confidence = None
            result.updated.append(product.id)
        self._commit("products", "update")
        return result

    def qc_counts(self, run_id: Any) -> Dict[str, int]:
        stmt = (
            select(Product.qc_status, func.count(Product.id))
            .where(Product.run_id == as_uuid(run_id))
            .where(Product.deleted_at.is_(None))
            .group_by(Product.qc_status)
        )
        return {status or "draft": count for status, count in self.db.execute(stmt).all()}

    def _load_products(self, product_ids: Iterable[Any]) -> List[Product]:
        ids = [as_uuid(pid) for pid in product_ids]
        if not ids:
            return []
        return list(self.db.scalars(select(Product).where(Product.id.in_(ids))).all())
