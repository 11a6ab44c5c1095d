"""Tests for joins over the user/organisation test case."""

from __future__ import annotations

import pytest

from models import Organisation, OrganisationMembership, User
from odmkit import NotFoundError, SchemaError, UnpopulatedReferenceError, UnpopulatedRelationError, get_schema


class TestCounts:
    """Tests for plain counts of the seeded data."""

    async def test_collections(self, testcase):
        db = testcase.database
        assert await db.query(User).count() == 4
        assert await db.query(Organisation).count() == 2
        assert await db.query(OrganisationMembership).count() == 4

    async def test_by_reference_key(self, testcase):
        db = testcase.database
        query = db.query(OrganisationMembership)
        assert await query.filter(user=testcase.marc.id).count() == 2
        assert await query.filter(user=testcase.peter.id).count() == 1
        assert await query.filter(user=testcase.marcel.id).count() == 1
        assert await query.filter(organisation=testcase.apple.id).count() == 1
        assert await query.filter(organisation=testcase.microsoft.id).count() == 3

    async def test_by_reference_instance(self, testcase):
        items = await testcase.database.query(OrganisationMembership).filter({"user": testcase.marc}).find()
        assert len(items) == 2

    async def test_join_on_scalar(self, testcase):
        with pytest.raises(SchemaError, match="is not marked as reference"):
            testcase.database.query(Organisation).join("id")


class TestStorageId:
    """The storage _id never leaks unless selected."""

    async def test_instance(self, testcase):
        item = await testcase.database.query(User).filter(name="marc").find_one()
        assert not hasattr(item, "_id")

    async def test_json(self, testcase):
        item = await testcase.database.query(User).filter(name="marc").as_json().find_one()
        assert "_id" not in item

    async def test_raw(self, testcase):
        item = await testcase.database.query(User).filter(name="marc").as_raw().find_one()
        assert "_id" not in item

    async def test_raw_selected(self, testcase):
        item = await testcase.database.query(User).filter(name="marc").select(["_id"]).as_raw().find_one()
        assert "_id" in item

    async def test_json_selected(self, testcase):
        query = testcase.database.query(User).filter(name="marc").select(["_id"])
        raw = await query.as_raw().find_one()

        item = await query.as_json().find_one()
        assert item == {"_id": str(raw["_id"])}
        assert await query.find_one() == item

    async def test_selected_with_fields(self, testcase):
        item = await testcase.database.query(User).filter(name="marc").select("_id", "name").as_json().find_one()
        assert set(item) == {"_id", "name"}
        assert item["name"] == "marc"


class TestJoinedFields:
    """Tests for field reads and existence checks with joins."""

    async def test_first(self, testcase):
        db = testcase.database
        assert (await db.query(User).find_one()).name == "admin"
        assert await db.query(User).find_one_field("name") == "admin"

    async def test_left_join_does_not_filter(self, testcase):
        assert await testcase.database.query(User).join("organisations").find_one_field("name") == "admin"

    async def test_inner_join_filters(self, testcase):
        """admin is in no organisation."""
        assert await testcase.database.query(User).inner_join("organisations").find_one_field("name") == "marc"

    async def test_inner_join_not_found(self, testcase):
        query = testcase.database.query(User).inner_join("organisations").filter(name="notexisting")
        with pytest.raises(NotFoundError, match="item not found"):
            await query.find_one_field("name")
        assert await query.find_one_field_or_none("name") is None

    async def test_field_order(self, testcase):
        db = testcase.database
        assert await db.query(User).find_field("name") == ["admin", "marc", "peter", "marcel"]
        assert await db.query(User).sort({"name": "asc"}).find_field("name") == ["admin", "marc", "marcel", "peter"]
        assert await db.query(User).sort({"name": "desc"}).find_field("name") == ["peter", "marcel", "marc", "admin"]

    async def test_has(self, testcase):
        db = testcase.database
        assert await db.query(User).join("organisations").filter(name="marc").has() is True
        assert await db.query(User).join("organisations").filter(name="notexisting").has() is False


class TestForwardJoins:
    """Tests for joins on forward references."""

    async def test_join_model(self, testcase):
        query = testcase.database.query(OrganisationMembership).join_with("user")
        join = query.model.joins[0]
        assert join.relation.property.resolved_type() is User
        assert join.relation.target is get_schema(User)
        assert join.relation.target.name == "users"

    async def test_join_with(self, testcase):
        db = testcase.database
        items = await db.query(OrganisationMembership).join_with("user").find()

        assert len(items) == 4
        assert isinstance(items[0].user, User)
        assert items[0].user is items[1].user
        assert len(items[0].user.id) > 10
        assert items[0].user.name == "marc"

        assert await db.query(OrganisationMembership).join_with("user").count() == 4

    async def test_join_with_filter(self, testcase):
        db = testcase.database
        query = db.query(OrganisationMembership).filter(user=testcase.peter.id).join_with("user")

        items = await query.find()
        assert len(items) == 1
        assert items[0].user.id == testcase.peter.id
        assert items[0].organisation.id == testcase.microsoft.id

        item = await query.find_one()
        assert item.user.name == "peter"
        with pytest.raises(UnpopulatedReferenceError, match="not completely populated"):
            item.organisation.name

        assert await query.count() == 1

    async def test_without_join(self, testcase):
        item = await testcase.database.query(OrganisationMembership).filter(user=testcase.peter.id).find_one()
        assert item.user.id == testcase.peter.id
        assert item.organisation.id == testcase.microsoft.id
        with pytest.raises(UnpopulatedReferenceError, match="not completely populated"):
            item.user.name
        with pytest.raises(UnpopulatedReferenceError, match="not completely populated"):
            item.organisation.name

    async def test_inner_join_without_filter(self, testcase):
        assert len(await testcase.database.query(OrganisationMembership).inner_join("user").find()) == 4

    async def test_left_join_with_filter(self, testcase):
        """Non-matching parents are kept with an empty relation."""
        items = await (
            testcase.database.query(OrganisationMembership)
            .use_join_with("user").filter(name="marc").end()
            .find()
        )
        assert len(items) == 4
        assert isinstance(items[0].user, User)
        assert isinstance(items[1].user, User)
        assert items[2].user is None
        assert items[3].user is None

    async def test_inner_join_with_filter(self, testcase):
        items = await (
            testcase.database.query(OrganisationMembership)
            .use_inner_join("user").filter(name="marc").end()
            .find()
        )
        assert len(items) == 2
        for item in items:
            with pytest.raises(UnpopulatedReferenceError, match="not completely populated"):
                item.user.name

    async def test_selected_join(self, testcase):
        """A join with a select yields plain dicts."""
        query = (
            testcase.database.query(OrganisationMembership)
            .use_inner_join_with("user").select(["id"]).filter(name="marc").end()
        )
        for items in (await query.find(), await query.clone().find()):
            assert len(items) == 2
            assert not isinstance(items[0].user, User)
            assert items[0].user == {"id": testcase.marc.id}
            assert items[1].user == {"id": testcase.marc.id}

    async def test_extra_join_keeps_inner_filter(self, testcase):
        query = (
            testcase.database.query(OrganisationMembership)
            .use_inner_join_with("user").filter(name="marc").end()
        )
        items = await query.find()
        assert len(items) == 2
        assert all(isinstance(item.user, User) for item in items)

        items = await query.join_with("organisation").find()
        assert len(items) == 2
        assert all(isinstance(item.user, User) for item in items)
        assert {item.organisation.name for item in items} == {"Apple", "Microsoft"}

        item = await query.find_one()
        assert item.user.name == "marc"

    async def test_two_joins(self, testcase):
        query = (
            testcase.database.query(OrganisationMembership)
            .use_join_with("user").filter(name="marc").end()
            .join_with("organisation")
        )
        assert len(query.model.joins) == 2
        assert query.model.joins[0].relation.target.cls is User
        assert query.model.joins[1].relation.target.cls is Organisation
        assert len(await query.find()) == 4


class TestRemovedReference:
    """Tests for references whose target was removed."""

    async def test_dangling_reference(self, testcase):
        db = testcase.database
        await db.remove(testcase.peter)

        query = db.query(OrganisationMembership).join_with("user").filter(user=testcase.peter.id)
        items = await query.find()
        assert len(items) == 1
        assert items[0].user is None
        assert await query.count() == 1

        query = db.query(OrganisationMembership).filter(user=testcase.peter.id)
        assert await query.inner_join("user").count() == 0
        assert await query.inner_join_with("user").count() == 0


class TestManyToMany:
    """Tests for joins through the membership pivot."""

    async def test_inner_join_with(self, testcase):
        items = await testcase.database.query(User).inner_join_with("organisations").find()

        assert [item.name for item in items] == ["marc", "peter", "marcel"]
        assert [org.name for org in items[0].organisations] == ["Microsoft", "Apple"]
        assert all(isinstance(org, Organisation) for org in items[0].organisations)
        assert [org.name for org in items[1].organisations] == ["Microsoft"]
        assert items[0].organisations[0] is items[1].organisations[0]

    async def test_inner_join_with_filter(self, testcase):
        items = await (
            testcase.database.query(User)
            .use_inner_join_with("organisations").filter(name="Microsoft").end()
            .find()
        )
        assert len(items) == 3
        assert [org.name for org in items[0].organisations] == ["Microsoft"]
        assert [org.name for org in items[1].organisations] == ["Microsoft"]
        assert items[0].organisations[0] is items[1].organisations[0]

    async def test_from_mapped_side(self, testcase):
        db = testcase.database
        for query in (db.query(Organisation).use_join_with("users").end(), db.query(Organisation).inner_join_with("users")):
            items = await query.find()
            assert [item.name for item in items] == ["Microsoft", "Apple"]
            assert [user.name for user in items[0].users] == ["marc", "peter", "marcel"]
            assert [user.name for user in items[1].users] == ["marc"]

    async def test_sorted_per_parent(self, testcase):
        items = await testcase.database.query(Organisation).use_inner_join_with("users").sort({"name": "asc"}).end().find()
        assert [item.name for item in items] == ["Microsoft", "Apple"]
        assert [user.name for user in items[0].users] == ["marc", "marcel", "peter"]

    async def test_paginated_per_parent(self, testcase):
        db = testcase.database

        items = await db.query(Organisation).use_join_with("users").sort("name").skip(1).end().find()
        assert [item.name for item in items] == ["Microsoft", "Apple"]
        assert [user.name for user in items[0].users] == ["marcel", "peter"]
        assert items[1].users == []

        items = await db.query(Organisation).use_join_with("users").sort("name").skip(1).limit(1).end().find()
        assert [user.name for user in items[0].users] == ["marcel"]
        assert items[1].users == []

    async def test_selected(self, testcase):
        items = await testcase.database.query(Organisation).use_join_with("users").select(["id"]).end().find()
        assert [item.name for item in items] == ["Microsoft", "Apple"]
        assert len(items[0].users) == 3
        assert len(items[1].users) == 1
        assert items[0].users[0] == {"id": testcase.marc.id}

    async def test_not_joined(self, testcase):
        item = await testcase.database.query(User).find_one()
        with pytest.raises(UnpopulatedRelationError, match="organisations was not populated"):
            item.organisations

    async def test_find_one_joined(self, testcase):
        db = testcase.database
        item = await db.query(User).join_with("organisations").filter(name="marc").find_one()
        assert item.name == "marc"
        assert len(item.organisations) == 2

        item = await db.query(User).inner_join_with("organisations").find_one()
        assert item.name == "marc"
        assert len(item.organisations) == 2


class TestNestedJoins:
    """Tests for joins inside joined queries."""

    @pytest.fixture
    def query(self, testcase):
        return testcase.database.query(User).use_inner_join_with("organisations").filter(name="Microsoft").end()

    async def test_nested_reference_unpopulated(self, testcase, query):
        await testcase.database.remove(testcase.peter)
        for items in (await query.clone().find(), await query.find()):
            assert [item.name for item in items] == ["marc", "marcel"]
            assert [org.name for org in items[0].organisations] == ["Microsoft"]
            with pytest.raises(UnpopulatedReferenceError, match="was not completely populated"):
                items[1].organisations[0].owner.name

    async def test_get_join(self, testcase, query):
        items = await query.clone().get_join("organisations").join_with("owner").end().find()

        assert [item.name for item in items] == ["marc", "peter", "marcel"]
        owner = items[0].organisations[0].owner
        assert isinstance(owner, User)
        assert owner is items[2].organisations[0].owner
        assert owner.name == "admin"
        assert owner.id == testcase.admin.id

    async def test_nested_select(self, testcase, query):
        items = await (
            query.clone()
            .get_join("organisations").use_join_with("owner").select(["id"]).end().end()
            .find()
        )
        assert items[0].organisations[0].name == "Microsoft"
        owner = items[1].organisations[0].owner
        assert not isinstance(owner, User)
        assert owner == {"id": testcase.admin.id}

    async def test_original_query_unchanged(self, query):
        query.get_join("organisations").join_with("owner").end()
        assert query.model.get_join("organisations").query.joins == ()


class TestInverseJoins:
    """Tests for the manager self reference."""

    @pytest.fixture
    async def manager(self, testcase):
        db = testcase.database
        manager = User(name="manager1")
        await db.add(manager)
        for user in (testcase.marc, testcase.peter, testcase.marcel):
            user.manager = manager
            await db.update(user)
        return manager

    async def test_reference_stored(self, testcase, manager):
        item = await testcase.database.query(User).filter(name="marc").find_one()
        assert item is not testcase.marc
        assert item.manager.id == manager.id

    async def test_back_reference_not_populated(self, testcase, manager):
        item = await testcase.database.query(User).filter(id=manager.id).find_one()
        assert item is not manager
        assert isinstance(item, User)
        assert item.id == manager.id
        with pytest.raises(UnpopulatedRelationError, match="managed_users was not populated"):
            item.managed_users

    async def test_join_with_back_reference(self, testcase, manager):
        item = await testcase.database.query(User).join_with("managed_users").filter(id=manager.id).find_one()
        assert len(item.managed_users) == 3
        assert isinstance(item.managed_users[0], User)
        assert item.managed_users[0].id == testcase.marc.id

    async def test_inner_join_back_reference(self, testcase, manager):
        names = await testcase.database.query(User).inner_join("managed_users").find_field("name")
        assert names == ["manager1"]

    async def test_unset_reference(self, testcase):
        db = testcase.database
        manager = User(name="manager")
        await db.add(manager)

        marc = await db.query(User).filter(name="marc").find_one()
        assert marc.manager is None
        marc.manager = manager
        assert marc.manager is manager
        await db.update(marc)

        marc = await db.query(User).join_with("manager").filter(name="marc").find_one()
        assert marc.manager.id == manager.id
        assert marc.manager.name == "manager"

        marc.manager = None
        await db.update(marc)

        marc = await db.query(User).filter(name="marc").find_one()
        assert marc.manager is None
