import asyncio
import logging
from typing import Any, List, Optional

from autolister.services.collaborators import PlacementStore
from autolister.services.generation.undo import StructuralUndoManager, UndoResult

logger = logging.getLogger(__name__)


class ImageRegroupService:
    """이미지를 다른 상품으로 옮기고, 직전 배치를 되돌릴 수 있게 보관합니다."""

    def __init__(self, store: PlacementStore, undo: Optional[StructuralUndoManager] = None):
        self.store = store
        self.undo = undo or StructuralUndoManager(store)

    async def move_images(self, image_ids: List[Any], target_product_id: Any, start_position: int = 0) -> int:
        if not image_ids:
            return 0

        await self.undo.capture(image_ids, label=f"Move {len(image_ids)} image(s)")
        results = await asyncio.gather(
            *(
                self.store.move_image(image_id, target_product_id, start_position + offset)
                for offset, image_id in enumerate(image_ids)
            ),
            return_exceptions=True,
        )

        moved = 0
        for image_id, result in zip(image_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to move image {image_id}: {result}")
            elif result:
                moved += 1
        logger.info(f"Moved {moved}/{len(image_ids)} image(s) to {target_product_id}")
        return moved

    async def undo_last(self) -> UndoResult:
        return await self.undo.undo()
