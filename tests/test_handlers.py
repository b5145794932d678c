"""Tests for action handlers."""

import tempfile
import os
import pytest

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from core.models import ActionType, ContentRecord
from core.store import StateStore
from handlers import (
    AddAffiliateLinkHandler,
    AddToCollectionHandler,
    HandlerRegistry,
    UpdateMetaDescriptionHandler,
    create_default_registry,
)
from handlers.affiliate_link import (
    SECTION_END,
    SECTION_START,
    apply_affiliate_section,
    format_affiliate_section,
    is_valid_affiliate_url,
    parse_affiliate_section,
)
from handlers.meta_description import generate_meta_description


@pytest.fixture
async def store():
    """Create a temporary store with one content record."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(os.path.join(tmpdir, "test_engine.db"))
        await store.initialize()
        await store.create_content_record(ContentRecord(
            id="c1",
            title="Cozy Sofa",
            source="patreon",
            source_url="https://www.patreon.com/janesims/posts/123",
            author="Jane",
            description="A comfy sofa.",
            short_description="Old meta",
            content_type="furniture",
            visual_style="maxis-match",
            themes=["modern", "cozy"],
            tags=["furniture"],
        ))
        yield store
        await store.close()


async def make_action(store, action_type, action_data=None, content_id="c1"):
    opp = await store.create_opportunity("Opp", "SEO", 0.9, 5.0, content_id=content_id)
    return await store.create_action(opp.id, action_type.value, action_data or {},
                                     execution_tier=1, auto_executable=True)


class TestHandlerRegistry:
    """Test handler registration and tier lookup."""

    def test_default_registry(self):
        registry = create_default_registry(store=None)
        assert set(registry.list_action_types()) == {
            "ADD_AFFILIATE_LINK", "UPDATE_META_DESCRIPTION", "ADD_TO_COLLECTION",
        }
        assert registry.get_execution_tier(ActionType.ADD_TO_COLLECTION) == 1
        assert registry.is_auto_executable("UPDATE_META_DESCRIPTION") is True

    def test_unregistered_type_is_manual(self):
        """Test unknown action types default to tier 3."""
        registry = create_default_registry(store=None)
        assert registry.get_handler("EXPAND_CONTENT") is None
        assert registry.get_execution_tier("EXPAND_CONTENT") == 3
        assert registry.is_auto_executable("EXPAND_CONTENT") is False

    def test_unregister(self):
        registry = HandlerRegistry()
        registry.register(UpdateMetaDescriptionHandler(None))
        registry.unregister(ActionType.UPDATE_META_DESCRIPTION)
        assert registry.list_action_types() == []


class TestAffiliateSection:
    """Test affiliate section helpers."""

    def test_url_allow_list(self):
        assert is_valid_affiliate_url("https://www.amazon.com/dp/X?tag=abc-20")
        assert is_valid_affiliate_url("https://www.curseforge.com/sims4/mods/x")
        assert not is_valid_affiliate_url("https://www.amazon.com/dp/X")
        assert not is_valid_affiliate_url("https://evil.example.com")

    def test_section_parses_back(self):
        links = [
            {"url": "https://www.patreon.com/jane?utm_source=x", "type": "patreon"},
            {"url": "https://www.thesimsresource.com/a&b", "type": "tsr"},
        ]
        section = format_affiliate_section(links)

        assert section.startswith(SECTION_START)
        assert section.endswith(SECTION_END)
        assert parse_affiliate_section("Intro\n\n" + section) == links

    def test_apply_replaces_existing_section(self):
        """Test an existing section is replaced in place."""
        old = format_affiliate_section([{"url": "https://www.patreon.com/old", "type": "patreon"}])
        new = format_affiliate_section([{"url": "https://www.patreon.com/new", "type": "patreon"}])

        result = apply_affiliate_section(f"Intro\n\n{old}\n\nOutro", new)

        assert "patreon.com/new" in result
        assert "patreon.com/old" not in result
        assert result.startswith("Intro")
        assert result.endswith("Outro")
        assert result.count(SECTION_START) == 1

    def test_apply_appends_or_uses_section_alone(self):
        section = format_affiliate_section([{"url": "https://www.patreon.com/a", "type": "patreon"}])
        assert apply_affiliate_section("Body", section) == f"Body\n\n{section}"
        assert apply_affiliate_section(None, section) == section


class TestAddAffiliateLinkHandler:
    """Test affiliate link handler."""

    @pytest.mark.asyncio
    async def test_validate(self, store):
        handler = AddAffiliateLinkHandler(store)

        action = await make_action(store, ActionType.ADD_AFFILIATE_LINK)
        assert (await handler.validate(action)).valid

        action = await make_action(store, ActionType.ADD_AFFILIATE_LINK, content_id=None)
        assert (await handler.validate(action)).reason == "No content ID specified"

        action = await make_action(store, ActionType.ADD_AFFILIATE_LINK, {"content_id": "missing"})
        assert (await handler.validate(action)).reason == "Content record not found"

        action = await make_action(store, ActionType.ADD_AFFILIATE_LINK,
                                   {"affiliate_url": "https://evil.example.com"})
        assert (await handler.validate(action)).reason == "Invalid affiliate URL format"

    @pytest.mark.asyncio
    async def test_validate_rejects_bad_data_shape(self, store):
        handler = AddAffiliateLinkHandler(store)
        action = await make_action(store, ActionType.ADD_AFFILIATE_LINK, {"content_id": 123})

        result = await handler.validate(action)
        assert result.valid is False
        assert result.reason.startswith("Invalid action data")

    @pytest.mark.asyncio
    async def test_execute_adds_patreon_link(self, store):
        """Test links derived from the record source."""
        handler = AddAffiliateLinkHandler(store)
        action = await make_action(store, ActionType.ADD_AFFILIATE_LINK)

        result = await handler.execute(action)

        assert result.success
        assert len(result.output["added_links"]) == 1
        link = result.output["added_links"][0]
        assert link["url"] == "https://www.patreon.com/janesims?utm_source=content-action-engine"
        assert link["type"] == "patreon"
        assert result.rollback_data["action_type"] == "ADD_AFFILIATE_LINK"

        record = await store.get_content_record("c1")
        assert record.description.startswith("A comfy sofa.")
        assert SECTION_START in record.description
        assert "affiliate:patreon" in record.tags

    @pytest.mark.asyncio
    async def test_execute_is_idempotent(self, store):
        """Test a second run finds the link already present."""
        handler = AddAffiliateLinkHandler(store)
        action = await make_action(store, ActionType.ADD_AFFILIATE_LINK)
        await handler.execute(action)
        before = await store.get_content_record("c1")

        result = await handler.execute(action)

        assert result.success
        assert result.output["message"] == "All suggested links already exist"
        assert result.rollback_data is None
        assert (await store.get_content_record("c1")).description == before.description

    @pytest.mark.asyncio
    async def test_explicit_link_merges_with_existing(self, store):
        handler = AddAffiliateLinkHandler(store)
        await handler.execute(await make_action(store, ActionType.ADD_AFFILIATE_LINK))

        action = await make_action(store, ActionType.ADD_AFFILIATE_LINK, {
            "affiliate_url": "https://store.steampowered.com/app/1",
            "affiliate_type": "steam",
        })
        result = await handler.execute(action)

        assert result.success
        record = await store.get_content_record("c1")
        urls = [link["url"] for link in parse_affiliate_section(record.description)]
        assert urls == [
            "https://www.patreon.com/janesims?utm_source=content-action-engine",
            "https://store.steampowered.com/app/1",
        ]
        assert record.description.count(SECTION_START) == 1

    @pytest.mark.asyncio
    async def test_no_links_for_unknown_source(self, store):
        await store.update_content_record("c1", source="website", source_url="https://example.com", author="Bob")
        handler = AddAffiliateLinkHandler(store)

        result = await handler.execute(await make_action(store, ActionType.ADD_AFFILIATE_LINK))

        assert result.success
        assert result.output["message"] == "No new affiliate links to add"

    @pytest.mark.asyncio
    async def test_rollback_restores_record(self, store):
        handler = AddAffiliateLinkHandler(store)
        result = await handler.execute(await make_action(store, ActionType.ADD_AFFILIATE_LINK))

        assert await handler.rollback(result.rollback_data) is True

        record = await store.get_content_record("c1")
        assert record.description == "A comfy sofa."
        assert record.tags == ["furniture"]

    @pytest.mark.asyncio
    async def test_rollback_refuses_foreign_payload(self, store):
        """Test a payload tagged for another handler is rejected."""
        handler = AddAffiliateLinkHandler(store)
        payload = {"action_type": "UPDATE_META_DESCRIPTION", "content_id": "c1", "original_description": "x"}

        assert await handler.rollback(payload) is False
        assert (await store.get_content_record("c1")).description == "A comfy sofa."


class TestUpdateMetaDescriptionHandler:
    """Test meta description handler."""

    def test_generate_from_attributes(self):
        record = ContentRecord(
            id="c1", title="Cozy Sofa", author="Jane", content_type="furniture",
            visual_style="maxis-match", themes=["modern", "cozy", "retro"], is_free=True,
        )
        assert generate_meta_description(record) == (
            "Download this maxis-match furniture - Cozy Sofa "
            "Perfect for modern & cozy builds. By Jane. Free download!"
        )

    def test_generate_without_type(self):
        record = ContentRecord(id="c1", title="Thing", is_free=False)
        assert generate_meta_description(record) == "Download this custom content - Thing"

    def test_generate_truncates(self):
        record = ContentRecord(id="c1", title="x" * 300)
        description = generate_meta_description(record)
        assert len(description) == 155
        assert description.endswith("...")

    @pytest.mark.asyncio
    async def test_validate_length_bounds(self, store):
        handler = UpdateMetaDescriptionHandler(store)

        action = await make_action(store, ActionType.UPDATE_META_DESCRIPTION, {"new_description": "short"})
        assert (await handler.validate(action)).reason == "Meta description too short (min 50 chars)"

        action = await make_action(store, ActionType.UPDATE_META_DESCRIPTION, {"new_description": "x" * 161})
        assert (await handler.validate(action)).reason == "Meta description too long (max 160 chars)"

        action = await make_action(store, ActionType.UPDATE_META_DESCRIPTION, {"new_description": "x" * 80})
        assert (await handler.validate(action)).valid

    @pytest.mark.asyncio
    async def test_execute_and_rollback(self, store):
        handler = UpdateMetaDescriptionHandler(store)
        new = "A lovingly crafted maxis-match sofa for every cozy living room build."
        action = await make_action(store, ActionType.UPDATE_META_DESCRIPTION, {"new_description": new})

        prepared = await handler.prepare_rollback(action)
        result = await handler.execute(action)

        assert result.success
        assert result.output["original_description"] == "Old meta"
        assert (await store.get_content_record("c1")).short_description == new

        assert prepared == result.rollback_data
        assert await handler.rollback(result.rollback_data) is True
        assert (await store.get_content_record("c1")).short_description == "Old meta"

    @pytest.mark.asyncio
    async def test_execute_generates_when_not_supplied(self, store):
        handler = UpdateMetaDescriptionHandler(store)
        result = await handler.execute(await make_action(store, ActionType.UPDATE_META_DESCRIPTION))

        assert result.success
        assert result.output["new_description"].startswith("Download this maxis-match furniture - Cozy Sofa")


class TestAddToCollectionHandler:
    """Test collection handler."""

    @pytest.mark.asyncio
    async def test_execute_creates_collection_and_rolls_back(self, store):
        """Test find-or-create and rollback by membership ID."""
        handler = AddToCollectionHandler(store)
        action = await make_action(store, ActionType.ADD_TO_COLLECTION, {
            "collection_name": "Top Picks",
            "collection_type": "featured",
        })

        assert await handler.prepare_rollback(action) is None
        result = await handler.execute(action)

        assert result.success
        collection = await store.find_collection("system", "Top Picks")
        assert collection is not None
        assert collection.is_featured is True
        item = await store.get_collection_item(collection.id, "c1")
        assert item.id == result.rollback_data["collection_item_id"]
        assert item.notes == "Added by automation: high engagement potential"

        assert await handler.rollback(result.rollback_data) is True
        assert await store.get_collection_item(collection.id, "c1") is None
        assert await handler.rollback(result.rollback_data) is False

    @pytest.mark.asyncio
    async def test_execute_reuses_named_collection(self, store):
        handler = AddToCollectionHandler(store)
        existing = await store.create_collection("system", "Top Picks")

        result = await handler.execute(await make_action(store, ActionType.ADD_TO_COLLECTION, {
            "collection_name": "Top Picks",
            "reason": "trending",
        }))

        assert result.output["collection_id"] == existing.id
        item = await store.get_collection_item(existing.id, "c1")
        assert item.notes == "Added by automation: trending"

    @pytest.mark.asyncio
    async def test_validate_collection_checks(self, store):
        handler = AddToCollectionHandler(store)

        action = await make_action(store, ActionType.ADD_TO_COLLECTION, {"collection_id": "nope"})
        assert (await handler.validate(action)).reason == "Collection not found"

        collection = await store.create_collection("system", "Top Picks")
        await store.create_collection_item(collection.id, "c1")
        action = await make_action(store, ActionType.ADD_TO_COLLECTION, {"collection_id": collection.id})
        assert (await handler.validate(action)).reason == "Content is already in this collection"

    @pytest.mark.asyncio
    async def test_execute_without_collection_fails(self, store):
        handler = AddToCollectionHandler(store)
        result = await handler.execute(await make_action(store, ActionType.ADD_TO_COLLECTION))

        assert result.success is False
        assert result.error == "No collection specified or could be created"

    @pytest.mark.asyncio
    async def test_rollback_refuses_mismatched_membership(self, store):
        """Test rollback leaves a row that belongs to another record."""
        handler = AddToCollectionHandler(store)
        collection = await store.create_collection("system", "Top Picks")
        item = await store.create_collection_item(collection.id, "c1")

        payload = handler.rollback_payload(
            collection_item_id=item.id,
            collection_id=collection.id,
            content_id="c2",
        )
        assert await handler.rollback(payload) is False
        assert await store.get_collection_item_by_id(item.id) is not None
