import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from autolister.db import session_factory as default_session_factory
from autolister.models import Product, ProductImage
from autolister.services.ai.exceptions import PersistenceError, wrap_exception
from autolister.services.collaborators import ImageRef, Placement

logger = logging.getLogger(__name__)

_PRODUCT_COLUMNS = frozenset(Product.__table__.columns.keys())


def as_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class ProductStore:
    """
    SQLAlchemy 기반 영속화 계층.
    호출마다 새 세션을 열어 동시 실행되는 작업끼리 세션을 공유하지 않습니다.
    동기 세션 작업은 asyncio.to_thread 로 이벤트 루프 밖에서 실행합니다.
    """

    def __init__(self, session_factory: Callable[[], Session] = default_session_factory):
        self.session_factory = session_factory

    async def update(self, item_id: Any, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - _PRODUCT_COLUMNS
        if unknown:
            logger.warning(f"Ignoring unknown product fields for {item_id}: {sorted(unknown)}")
        values = {k: v for k, v in fields.items() if k in _PRODUCT_COLUMNS and k != "id"}

        try:
            return await asyncio.to_thread(self._update_sync, item_id, values)
        except SQLAlchemyError as e:
            wrapped = wrap_exception(e, PersistenceError, table_name="products", operation="update")
            logger.error(f"Failed to update product {item_id}: {wrapped}")
            raise wrapped from e

    def _update_sync(self, item_id: Any, values: Dict[str, Any]) -> bool:
        with self.session_factory() as db:
            product = db.get(Product, as_uuid(item_id))
            if product is None or product.deleted_at is not None:
                logger.warning(f"Product {item_id} not found for update")
                return False
            for key, value in values.items():
                setattr(product, key, value)
            db.commit()
            return True

    async def fetch_images(self, item_id: Any) -> List[ImageRef]:
        try:
            return await asyncio.to_thread(self._fetch_images_sync, item_id)
        except SQLAlchemyError as e:
            raise wrap_exception(e, PersistenceError, table_name="product_images", operation="select") from e

    def _fetch_images_sync(self, item_id: Any) -> List[ImageRef]:
        with self.session_factory() as db:
            stmt = (
                select(ProductImage)
                .where(ProductImage.product_id == as_uuid(item_id))
                .where(ProductImage.deleted_at.is_(None))
                .order_by(ProductImage.position)
            )
            return [
                ImageRef(id=img.id, url=img.url, position=img.position, note=img.note)
                for img in db.scalars(stmt).all()
            ]

    async def fetch_placements(self, image_ids: List[Any]) -> List[Placement]:
        if not image_ids:
            return []
        try:
            return await asyncio.to_thread(self._fetch_placements_sync, list(image_ids))
        except SQLAlchemyError as e:
            raise wrap_exception(e, PersistenceError, table_name="product_images", operation="select") from e

    def _fetch_placements_sync(self, image_ids: List[Any]) -> List[Placement]:
        with self.session_factory() as db:
            stmt = select(ProductImage).where(ProductImage.id.in_([as_uuid(i) for i in image_ids]))
            return [
                Placement(entity_id=img.id, previous_parent_id=img.product_id, previous_position=img.position)
                for img in db.scalars(stmt).all()
            ]

    async def write_placement(self, placement: Placement) -> bool:
        return await self.move_image(placement.entity_id, placement.previous_parent_id, placement.previous_position)

    async def move_image(self, image_id: Any, product_id: Any, position: int) -> bool:
        try:
            return await asyncio.to_thread(self._move_image_sync, image_id, product_id, position)
        except SQLAlchemyError as e:
            wrapped = wrap_exception(e, PersistenceError, table_name="product_images", operation="update")
            logger.error(f"Failed to move image {image_id}: {wrapped}")
            raise wrapped from e

    def _move_image_sync(self, image_id: Any, product_id: Any, position: int) -> bool:
        with self.session_factory() as db:
            image = db.get(ProductImage, as_uuid(image_id))
            if image is None:
                return False
            image.product_id = as_uuid(product_id) if product_id is not None else None
            image.position = position
            db.commit()
            return True

    def list_batch_products(self, batch_id: Any) -> List[Product]:
        with self.session_factory() as db:
            stmt = (
                select(Product)
                .where(Product.batch_id == as_uuid(batch_id))
                .where(Product.deleted_at.is_(None))
                .order_by(Product.created_at)
            )
            return list(db.scalars(stmt).all())
