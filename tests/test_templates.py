"""Tests for static template resolution and personalization."""
from unittest.mock import AsyncMock

import pytest

from conftest import ACCOUNT, make_lead, seed_templates
from models.schemas import TemplateCategory, TemplateStatus
from templates.library import (
    FINAL, GENERIC, STATE_BASED, SYSTEM_DEFAULTS, TemplateLibrary, is_system_template,
    personalize, positional_body, stage_category, system_default, template_variables,
)


class TestStageCategory:
    @pytest.mark.parametrize("stage,final,expected", [
        (1, False, STATE_BASED),
        (2, False, GENERIC),
        (3, False, GENERIC),
        (4, False, FINAL),
        (2, True, FINAL),
    ])
    def test_mapping(self, stage, final, expected):
        assert stage_category(stage, final) == expected


class TestPersonalize:
    def test_fills_lead_fields(self):
        lead = make_lead(location_preference="Bishan", budget="1.2M")
        text = personalize("Hi {{name}}, homes in {{ location }} under {{budget}}", lead)
        assert text == "Hi Mei Ling Tan, homes in Bishan under 1.2M"

    def test_defaults_and_unknown_placeholders(self):
        lead = make_lead(full_name="")
        assert personalize("Hi {{name}} {{mystery}} about {{property_type}}", lead) == \
            "Hi there about property"

    def test_first_name(self):
        assert personalize("{{first_name}}!", make_lead()) == "Mei!"


class TestPositionalBody:
    def test_rewrites_named_placeholders(self):
        body, names = positional_body("Hi {{name}}, {{budget}} works? Thanks {{name}} {{oops}}")
        assert body == "Hi {{1}}, {{2}} works? Thanks {{1}}"
        assert names == ["name", "budget"]

    def test_variables_follow_positions(self):
        lead = make_lead(budget="900k")
        assert template_variables("{{budget}} for {{name}}", lead) == ["900k", "Mei Ling Tan"]


class TestTemplateLibrary:
    @pytest.mark.asyncio
    async def test_prefers_state_then_default(self, store):
        library = TemplateLibrary(store)
        general = await seed_templates(store, 1, lead_state="default", stage_category=GENERIC)
        assert (await library.resolve(ACCOUNT, "exploring", 2)).id == general[0].id

        specific = await seed_templates(store, 1, lead_state="exploring", stage_category=GENERIC)
        assert (await library.resolve(ACCOUNT, "exploring", 2)).id == specific[0].id

    @pytest.mark.asyncio
    async def test_ties_go_to_least_used(self, store):
        await seed_templates(store, 1, lead_state="exploring", stage_category=STATE_BASED,
                             response_rate=20.0, usage_count=9)
        fresh = await seed_templates(store, 1, lead_state="exploring", stage_category=STATE_BASED,
                                     response_rate=20.0, usage_count=1)
        assert (await TemplateLibrary(store).resolve(ACCOUNT, "exploring", 1)).id == fresh[0].id

    @pytest.mark.asyncio
    async def test_ignores_unapproved(self, store):
        await seed_templates(store, 1, lead_state="exploring", stage_category=STATE_BASED,
                             status=TemplateStatus.PENDING)
        template = await TemplateLibrary(store).resolve(ACCOUNT, "exploring", 1)
        assert is_system_template(template)

    @pytest.mark.asyncio
    async def test_system_default_on_store_error(self):
        store = AsyncMock()
        store.list_templates.side_effect = RuntimeError("db gone")
        template = await TemplateLibrary(store).resolve(ACCOUNT, "exploring", 5)
        assert template.id == "system:final"
        assert template.content == SYSTEM_DEFAULTS[FINAL]

    def test_system_default_shape(self):
        template = system_default(ACCOUNT, STATE_BASED)
        assert template.name == "system_default_state_based"
        assert template.category == TemplateCategory.CORE_BUSINESS
        assert is_system_template(template)
