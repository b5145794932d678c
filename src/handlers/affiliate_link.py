"""Adds affiliate/support links to a content record."""

import html
import re
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from core.models import Action, ActionType, ContentRecord, ExecutionTier
from handlers.base import AUTOMATION_ACTOR, ActionHandler, HandlerResult, ValidationResult


logger = structlog.get_logger()

# URLs accepted when an action names a specific affiliate link
VALID_AFFILIATE_PATTERNS = [
    re.compile(r"amazon\.com.*tag="),
    re.compile(r"patreon\.com"),
    re.compile(r"store\.steampowered\.com"),
    re.compile(r"ea\.com.*store"),
    re.compile(r"thesimsresource\.com"),
    re.compile(r"curseforge\.com"),
]

SECTION_START = "<!-- AFFILIATE_LINKS -->"
SECTION_END = "<!-- END_AFFILIATE_LINKS -->"
SECTION_PATTERN = re.compile(
    re.escape(SECTION_START) + r"[\s\S]*" + re.escape(SECTION_END)
)
LINK_PATTERN = re.compile(r'<a href="([^"]+)"[^>]*>([^<]*)</a>')
PATREON_PATTERN = re.compile(r"patreon\.com/([^/?]+)")

TAG_PREFIX = "affiliate:"


def is_valid_affiliate_url(url: str) -> bool:
    """Check a URL against the allow-list."""
    return any(p.search(url) for p in VALID_AFFILIATE_PATTERNS)


def parse_affiliate_section(text: Optional[str]) -> list[dict[str, str]]:
    """Extract the links of an existing affiliate section."""
    if not text:
        return []
    match = SECTION_PATTERN.search(text)
    if not match:
        return []
    return [
        {"url": html.unescape(url), "type": html.unescape(label)}
        for url, label in LINK_PATTERN.findall(match.group(0))
    ]


def format_affiliate_section(links: list[dict[str, Any]]) -> str:
    """Render links as a delimited, machine-parseable section."""
    if not links:
        return ""
    link_html = " | ".join(
        f'<a href="{html.escape(link["url"], quote=True)}" rel="nofollow sponsored" '
        f'target="_blank">{html.escape(link["type"])}</a>'
        for link in links
    )
    return f"{SECTION_START}\n**Support the Creator:** {link_html}\n{SECTION_END}"


def apply_affiliate_section(description: Optional[str], section: str) -> str:
    """Replace an existing section, or append one."""
    if not description:
        return section
    if SECTION_PATTERN.search(description):
        return SECTION_PATTERN.sub(lambda _: section, description, count=1)
    return f"{description}\n\n{section}"


class AddAffiliateLinkHandler(ActionHandler):
    """Tier 1: append affiliate links derived from the record's source."""

    action_type = ActionType.ADD_AFFILIATE_LINK
    tier = ExecutionTier.AUTO
    data_schema = {
        "type": "object",
        "properties": {
            "content_id": {"type": "string"},
            "affiliate_url": {"type": "string"},
            "affiliate_type": {"type": "string"},
            "position": {"type": "string"},
            "reason": {"type": "string"},
        },
    }

    def __init__(self, store, utm_source: str = "content-action-engine"):
        super().__init__(store)
        self.utm_source = utm_source

    async def validate(self, action: Action) -> ValidationResult:
        problem = self.check_action_data(action)
        if problem:
            return ValidationResult.fail(problem)

        content_id = await self.resolve_content_id(action)
        if not content_id:
            return ValidationResult.fail("No content ID specified")

        if not await self.store.get_content_record(content_id):
            return ValidationResult.fail("Content record not found")

        url = action.action_data.get("affiliate_url")
        if url and not is_valid_affiliate_url(url):
            return ValidationResult.fail("Invalid affiliate URL format")

        return ValidationResult.ok()

    async def execute(self, action: Action) -> HandlerResult:
        content_id = await self.resolve_content_id(action)
        if not content_id:
            return HandlerResult(success=False, error="No content ID available")

        record = await self.store.get_content_record(content_id)
        if not record:
            return HandlerResult(success=False, error="Content record not found")

        candidates = self.generate_links(record, action.action_data)
        if not candidates:
            return HandlerResult(
                success=True,
                output={"message": "No new affiliate links to add", "content_id": content_id},
            )

        existing = parse_affiliate_section(record.description)
        existing_urls = {link["url"] for link in existing}
        links_to_add = [link for link in candidates if link["url"] not in existing_urls]

        if not links_to_add:
            return HandlerResult(
                success=True,
                output={"message": "All suggested links already exist", "content_id": content_id},
            )

        section = format_affiliate_section(existing + links_to_add)
        new_tags = list(record.tags)
        for link in links_to_add:
            tag = f"{TAG_PREFIX}{link['type']}"
            if tag not in new_tags:
                new_tags.append(tag)

        await self.store.update_content_record(
            content_id,
            description=apply_affiliate_section(record.description, section),
            tags=new_tags,
        )

        logger.info(
            "affiliate_links_added",
            content_id=content_id,
            count=len(links_to_add),
            types=[link["type"] for link in links_to_add],
        )

        return HandlerResult(
            success=True,
            output={"added_links": links_to_add, "content_id": content_id},
            rollback_data=self.rollback_payload(
                content_id=content_id,
                original_description=record.description,
                original_tags=list(record.tags),
                added_links=links_to_add,
            ),
        )

    async def prepare_rollback(self, action: Action) -> Optional[dict[str, Any]]:
        content_id = await self.resolve_content_id(action)
        if not content_id:
            return None

        record = await self.store.get_content_record(content_id)
        return self.rollback_payload(
            content_id=content_id,
            original_description=record.description if record else None,
            original_tags=list(record.tags) if record else [],
        )

    async def rollback(self, rollback_data: dict[str, Any]) -> bool:
        if not self.owns_rollback_payload(rollback_data):
            return False
        try:
            return await self.store.update_content_record(
                rollback_data["content_id"],
                description=rollback_data.get("original_description"),
                tags=rollback_data.get("original_tags") or [],
            )
        except Exception as e:
            logger.error("affiliate_rollback_failed", error=str(e))
            return False

    def generate_links(self, record: ContentRecord, data: dict[str, Any]) -> list[dict[str, Any]]:
        """Explicit link from the action data, else heuristics from the record's source."""
        now = datetime.now(timezone.utc).isoformat()

        def link(url: str, link_type: str, position: str) -> dict[str, Any]:
            return {
                "url": url,
                "type": link_type,
                "position": position,
                "added_at": now,
                "added_by": AUTOMATION_ACTOR,
            }

        if data.get("affiliate_url"):
            return [link(
                data["affiliate_url"],
                data.get("affiliate_type") or "custom",
                data.get("position") or "sidebar",
            )]

        links = []
        source_text = f"{record.source} {record.source_url or ''} {record.author or ''}".lower()

        if "patreon" in source_text:
            match = PATREON_PATTERN.search(record.source_url or "")
            if match:
                links.append(link(
                    f"https://www.patreon.com/{match.group(1)}?utm_source={self.utm_source}",
                    "patreon",
                    "prominent",
                ))

        if "thesimsresource" in source_text or "tsr" in source_text:
            links.append(link(record.source_url or "https://www.thesimsresource.com", "tsr", "sidebar"))

        if "curseforge" in source_text:
            links.append(link(record.source_url or "https://www.curseforge.com/sims4", "curseforge", "sidebar"))

        return links
