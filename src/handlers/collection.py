"""Adds a content record to a curated collection."""

from typing import Any, Optional

import structlog

from core.models import Action, ActionType, ExecutionTier
from handlers.base import ActionHandler, HandlerResult, ValidationResult


logger = structlog.get_logger()

# Owner of collections the engine creates
SYSTEM_OWNER = "system"

COLLECTION_DESCRIPTIONS = {
    "featured": "Hand-picked featured content selected for quality and popularity.",
    "affiliate_featured": "Top picks from our favorite creators - support them by visiting their pages!",
    "seasonal": "Seasonal content perfect for your current gameplay.",
    "trending": "Currently trending content that players are loving.",
    "curated": "A carefully curated collection of quality content.",
}


def collection_description(collection_type: Optional[str]) -> str:
    return COLLECTION_DESCRIPTIONS.get(collection_type or "curated", COLLECTION_DESCRIPTIONS["curated"])


class AddToCollectionHandler(ActionHandler):
    """
    Tier 1: add a membership row to a collection.

    Targets ``collection_id`` when given; otherwise finds or creates a
    system-owned collection named ``collection_name``. Rollback deletes the
    exact membership row created, by its ID.
    """

    action_type = ActionType.ADD_TO_COLLECTION
    tier = ExecutionTier.AUTO
    data_schema = {
        "type": "object",
        "properties": {
            "content_id": {"type": "string"},
            "collection_id": {"type": "string"},
            "collection_name": {"type": "string", "minLength": 1},
            "collection_type": {"type": "string"},
            "notes": {"type": "string"},
            "reason": {"type": "string"},
        },
    }

    async def validate(self, action: Action) -> ValidationResult:
        problem = self.check_action_data(action)
        if problem:
            return ValidationResult.fail(problem)

        content_id = await self.resolve_content_id(action)
        if not content_id:
            return ValidationResult.fail("No content ID specified")

        if not await self.store.get_content_record(content_id):
            return ValidationResult.fail("Content record not found")

        collection_id = action.action_data.get("collection_id")
        if collection_id:
            if not await self.store.get_collection(collection_id):
                return ValidationResult.fail("Collection not found")
            if await self.store.get_collection_item(collection_id, content_id):
                return ValidationResult.fail("Content is already in this collection")

        return ValidationResult.ok()

    async def execute(self, action: Action) -> HandlerResult:
        data = action.action_data

        content_id = await self.resolve_content_id(action)
        if not content_id:
            return HandlerResult(success=False, error="No content ID available")

        if not await self.store.get_content_record(content_id):
            return HandlerResult(success=False, error="Content record not found")

        collection_id = data.get("collection_id")
        if not collection_id and data.get("collection_name"):
            collection = await self.store.find_collection(SYSTEM_OWNER, data["collection_name"])
            if not collection:
                collection = await self.store.create_collection(
                    owner=SYSTEM_OWNER,
                    name=data["collection_name"],
                    description=collection_description(data.get("collection_type")),
                    is_public=True,
                    is_featured=data.get("collection_type") == "featured",
                )
                logger.info("collection_created", collection_id=collection.id, name=collection.name)
            collection_id = collection.id

        if not collection_id:
            return HandlerResult(success=False, error="No collection specified or could be created")

        if await self.store.get_collection_item(collection_id, content_id):
            return HandlerResult(
                success=True,
                output={"message": "Content is already in collection", "collection_id": collection_id},
            )

        notes = data.get("notes") or f"Added by automation: {data.get('reason') or 'high engagement potential'}"
        item = await self.store.create_collection_item(collection_id, content_id, notes)
        logger.info("collection_item_added", collection_id=collection_id, content_id=content_id)

        fields = {
            "collection_item_id": item.id,
            "collection_id": collection_id,
            "content_id": content_id,
        }
        return HandlerResult(
            success=True,
            output=dict(fields),
            rollback_data=self.rollback_payload(**fields),
        )

    async def prepare_rollback(self, action: Action) -> Optional[dict[str, Any]]:
        # The membership row ID only exists after execute
        return None

    async def rollback(self, rollback_data: dict[str, Any]) -> bool:
        if not self.owns_rollback_payload(rollback_data):
            return False
        item_id = rollback_data["collection_item_id"]
        try:
            item = await self.store.get_collection_item_by_id(item_id)
            if not item:
                logger.warning("collection_rollback_item_missing", collection_item_id=item_id)
                return False
            if (item.collection_id, item.content_id) != (
                rollback_data.get("collection_id"),
                rollback_data.get("content_id"),
            ):
                logger.error(
                    "collection_rollback_item_mismatch",
                    collection_item_id=item_id,
                    collection_id=item.collection_id,
                    content_id=item.content_id,
                )
                return False
            return await self.store.delete_collection_item(item_id)
        except Exception as e:
            logger.error("collection_rollback_failed", error=str(e))
            return False
