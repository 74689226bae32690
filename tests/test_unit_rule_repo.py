"""Tests for the compliance rule catalog."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers import ADMIN, OWNER
from tracechain.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from tracechain.db.models import EventOutbox
from tracechain.domain.enums import EntityType, EventType
from tracechain.repos import rule_repo


def _rule(**overrides):
    data = {
        "rule_id": "GDP-TEMP",
        "name": "Temperature controlled",
        "entity_type": "pharmaceutical",
        "requirement": "Stored between 2 and 8 degrees",
        "standard": "GDP",
        "severity": 3,
        "actor": ADMIN,
    }
    data.update(overrides)
    return data


@pytest.mark.unit
class TestAddRule:
    @pytest.mark.anyio
    async def test_admin_adds_rule(self, db_session: AsyncSession):
        rule = await rule_repo.add_rule(db_session, **_rule())
        assert rule.is_active is True
        assert rule.entity_type == EntityType.PHARMACEUTICAL
        assert rule.created_by == ADMIN

        fetched = await rule_repo.get_rule(db_session, rule_id="GDP-TEMP")
        assert fetched.severity == 3

    @pytest.mark.anyio
    async def test_only_admin(self, db_session: AsyncSession):
        with pytest.raises(AuthorizationError):
            await rule_repo.add_rule(db_session, **_rule(actor=OWNER))

    @pytest.mark.anyio
    @pytest.mark.parametrize("severity", [0, 6, True, "3"])
    async def test_severity_range(self, db_session: AsyncSession, severity):
        with pytest.raises(ValidationError):
            await rule_repo.add_rule(db_session, **_rule(severity=severity))

    @pytest.mark.anyio
    @pytest.mark.parametrize("overrides", [{"rule_id": ""}, {"name": " "}, {"entity_type": "gadget"}])
    async def test_invalid_fields(self, db_session: AsyncSession, overrides):
        with pytest.raises(ValidationError):
            await rule_repo.add_rule(db_session, **_rule(**overrides))

    @pytest.mark.anyio
    async def test_duplicate_id(self, db_session: AsyncSession):
        await rule_repo.add_rule(db_session, **_rule())
        with pytest.raises(ConflictError):
            await rule_repo.add_rule(db_session, **_rule(name="Another"))


@pytest.mark.unit
class TestRuleActivation:
    @pytest.mark.anyio
    async def test_deactivate_and_reactivate(self, db_session: AsyncSession):
        await rule_repo.add_rule(db_session, **_rule())
        rule = await rule_repo.set_rule_active(
            db_session, rule_id="GDP-TEMP", active=False, actor=ADMIN
        )
        assert rule.is_active is False
        assert await rule_repo.list_rules(db_session, active_only=True) == []

        rule = await rule_repo.set_rule_active(
            db_session, rule_id="GDP-TEMP", active=True, actor=ADMIN
        )
        assert rule.is_active is True

    @pytest.mark.anyio
    async def test_same_value_is_silent(self, db_session: AsyncSession):
        await rule_repo.add_rule(db_session, **_rule())
        await rule_repo.set_rule_active(db_session, rule_id="GDP-TEMP", active=True, actor=ADMIN)
        await db_session.flush()

        count = await db_session.scalar(
            select(func.count())
            .select_from(EventOutbox)
            .where(EventOutbox.event_type == EventType.RULE_ACTIVATION_CHANGED)
        )
        assert count == 0

    @pytest.mark.anyio
    async def test_only_admin(self, db_session: AsyncSession):
        await rule_repo.add_rule(db_session, **_rule())
        with pytest.raises(AuthorizationError):
            await rule_repo.set_rule_active(
                db_session, rule_id="GDP-TEMP", active=False, actor=OWNER
            )

    @pytest.mark.anyio
    async def test_unknown_rule(self, db_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await rule_repo.set_rule_active(db_session, rule_id="NOPE", active=False, actor=ADMIN)


@pytest.mark.unit
class TestRulesForType:
    @pytest.mark.anyio
    async def test_index_includes_inactive_rules(self, db_session: AsyncSession):
        await rule_repo.add_rule(db_session, **_rule(rule_id="GDP-TEMP"))
        await rule_repo.add_rule(db_session, **_rule(rule_id="GDP-DOCS"))
        await rule_repo.add_rule(
            db_session, **_rule(rule_id="HACCP-1", entity_type="food", standard="HACCP")
        )
        await rule_repo.set_rule_active(db_session, rule_id="GDP-DOCS", active=False, actor=ADMIN)

        assert await rule_repo.rules_for_type(db_session, entity_type="pharmaceutical") == [
            "GDP-DOCS",
            "GDP-TEMP",
        ]
        assert await rule_repo.rules_for_type(db_session, entity_type=EntityType.FOOD) == [
            "HACCP-1"
        ]

    @pytest.mark.anyio
    async def test_unknown_type(self, db_session: AsyncSession):
        with pytest.raises(ValidationError):
            await rule_repo.rules_for_type(db_session, entity_type="gadget")
