"""Replaces the short (meta) description of a content record."""

from typing import Any, Optional

import structlog

from core.models import Action, ActionType, ContentRecord, ExecutionTier
from handlers.base import ActionHandler, HandlerResult, ValidationResult


logger = structlog.get_logger()

MIN_LENGTH = 50
MAX_LENGTH = 160
GENERATED_MAX_LENGTH = 155


def generate_meta_description(record: ContentRecord) -> str:
    """Build a description from structured record attributes."""
    parts = []

    if record.content_type:
        kind = " ".join(p for p in (record.visual_style, record.content_type) if p)
        parts.append(f"Download this {kind}")
    else:
        parts.append("Download this custom content")

    parts.append(f"- {record.title}")

    if record.themes:
        parts.append(f"Perfect for {' & '.join(record.themes[:2])} builds.")

    if record.author:
        parts.append(f"By {record.author}.")

    if record.is_free:
        parts.append("Free download!")

    description = " ".join(parts)
    if len(description) > GENERATED_MAX_LENGTH:
        description = description[:GENERATED_MAX_LENGTH - 3] + "..."
    return description


class UpdateMetaDescriptionHandler(ActionHandler):
    """Tier 1: set a supplied or generated meta description."""

    action_type = ActionType.UPDATE_META_DESCRIPTION
    tier = ExecutionTier.AUTO
    data_schema = {
        "type": "object",
        "properties": {
            "content_id": {"type": "string"},
            "new_description": {"type": "string"},
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

        new_description = action.action_data.get("new_description")
        if new_description:
            if len(new_description) > MAX_LENGTH:
                return ValidationResult.fail(f"Meta description too long (max {MAX_LENGTH} chars)")
            if len(new_description) < MIN_LENGTH:
                return ValidationResult.fail(f"Meta description too short (min {MIN_LENGTH} chars)")

        return ValidationResult.ok()

    async def execute(self, action: Action) -> HandlerResult:
        content_id = await self.resolve_content_id(action)
        if not content_id:
            return HandlerResult(success=False, error="No content ID available")

        record = await self.store.get_content_record(content_id)
        if not record:
            return HandlerResult(success=False, error="Content record not found")

        original = record.short_description
        new_description = action.action_data.get("new_description") or generate_meta_description(record)

        await self.store.update_content_record(content_id, short_description=new_description)
        logger.info("meta_description_updated", content_id=content_id, length=len(new_description))

        return HandlerResult(
            success=True,
            output={
                "content_id": content_id,
                "original_description": original,
                "new_description": new_description,
            },
            rollback_data=self.rollback_payload(
                content_id=content_id,
                original_description=original,
            ),
        )

    async def prepare_rollback(self, action: Action) -> Optional[dict[str, Any]]:
        content_id = await self.resolve_content_id(action)
        if not content_id:
            return None

        record = await self.store.get_content_record(content_id)
        return self.rollback_payload(
            content_id=content_id,
            original_description=record.short_description if record else None,
        )

    async def rollback(self, rollback_data: dict[str, Any]) -> bool:
        if not self.owns_rollback_payload(rollback_data):
            return False
        try:
            return await self.store.update_content_record(
                rollback_data["content_id"],
                short_description=rollback_data.get("original_description"),
            )
        except Exception as e:
            logger.error("meta_description_rollback_failed", error=str(e))
            return False
