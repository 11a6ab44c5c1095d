"""Tests for full conversion between class, plain and mongo forms."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest
from bson import Binary, ObjectId

from models import Document, Organisation, OrganisationMembership, Plan, SimpleModel, SubModel, User
from odmkit import (
    ConversionError,
    UnpopulatedReferenceError,
    class_to_mongo,
    class_to_plain,
    convert_filter,
    is_populated,
    mongo_to_class,
    mongo_to_plain,
    plain_to_class,
    plain_to_mongo,
)

CREATED = datetime(2018, 10, 13, 12, 17, 35, tzinfo=UTC)


@pytest.fixture
def model():
    instance = SimpleModel(name="myName")
    instance.plan = Plan.PRO
    instance.type = 5
    instance.created = CREATED
    instance.children.append(SubModel(label="fooo"))
    instance.children.append(SubModel(label="barr"))
    instance.children_map["foo"] = SubModel(label="bar")
    instance.children_map["foo2"] = SubModel(label="bar2")
    return instance


class TestClassToMongo:
    """Tests for class_to_mongo()."""

    def test_simple_model(self):
        mongo = class_to_mongo(SimpleModel, SimpleModel(name="myName"))
        assert isinstance(mongo["id"], Binary)
        assert mongo["id"].subtype == 4
        assert mongo["name"] == "myName"

    def test_all_fields(self, model):
        mongo = class_to_mongo(SimpleModel, model)

        assert mongo["id"].as_uuid() == uuid.UUID(model.id)
        assert mongo["type"] == 5
        assert mongo["plan"] == 1
        assert mongo["created"] == CREATED
        assert mongo["children"] == [{"label": "fooo"}, {"label": "barr"}]
        assert mongo["children_map"] == {"foo": {"label": "bar"}, "foo2": {"label": "bar2"}}

    def test_none_is_kept(self):
        """None is a value, it is not dropped."""
        mongo = class_to_mongo(SimpleModel, SimpleModel(name="peter"))
        assert "any_field" in mongo
        assert mongo["any_field"] is None

    def test_object_id(self):
        mongo = class_to_mongo(Document, Document(_id="5be340cb2ffb5e901a9b62e4"))
        assert mongo["_id"] == ObjectId("5be340cb2ffb5e901a9b62e4")

    def test_invalid_object_id(self):
        with pytest.raises(ConversionError, match="Invalid ObjectID given in property _id") as exc:
            class_to_mongo(Document, Document(_id="notavalidId"))
        assert exc.value.property_name == "_id"

    def test_invalid_uuid(self):
        with pytest.raises(ConversionError, match="Invalid UUID v4 given in property id"):
            class_to_mongo(SimpleModel, SimpleModel(name="peter", id="notavalidId"))

    def test_uuid_must_be_v4(self):
        with pytest.raises(ConversionError, match="Invalid UUID v4"):
            class_to_mongo(SimpleModel, SimpleModel(name="peter", id=str(uuid.uuid1())))

    def test_binary(self):
        mongo = class_to_mongo(SimpleModel, SimpleModel(name="peter", preview=b"FooBar"))
        assert isinstance(mongo["preview"], Binary)
        assert len(mongo["preview"]) == 6

    def test_references_store_primary_key(self):
        """References convert to the target's primary key, back references are skipped."""
        admin = User(name="admin")
        marc = User(name="marc", manager=admin)

        mongo = class_to_mongo(User, marc)
        assert mongo["manager"] == Binary.from_uuid(uuid.UUID(admin.id))
        assert "managed_users" not in mongo
        assert "organisations" not in mongo

    def test_entity_accepted_as_mapping(self):
        """Class-form dicts convert like instances."""
        mongo = class_to_mongo(SubModel, {"label": 3})
        assert mongo == {"label": "3"}


class TestMongoToClass:
    """Tests for mongo_to_class()."""

    def test_round_trip(self, model):
        instance = mongo_to_class(SimpleModel, class_to_mongo(SimpleModel, model))

        assert isinstance(instance, SimpleModel)
        assert instance.id == model.id
        assert instance.plan is Plan.PRO
        assert instance.created == CREATED
        assert isinstance(instance.children[0], SubModel)
        assert instance.children[1].label == "barr"
        assert instance.children_map["foo2"].label == "bar2"

    def test_binary(self):
        instance = mongo_to_class(SimpleModel, {"preview": Binary(b"FooBar")})
        assert instance.preview == b"FooBar"

    def test_array_given_mapping(self):
        """An array property given a mapping becomes an empty list."""
        instance = mongo_to_class(SimpleModel, {"name": "peter", "tags": {}, "types": {}})
        assert instance.types == []

    def test_reference_becomes_placeholder(self):
        """References load as detached placeholders knowing only the primary key."""
        marc = User(name="marc")
        apple = Organisation(name="Apple", owner=marc)
        membership = OrganisationMembership(user=marc, organisation=apple)

        instance = mongo_to_class(OrganisationMembership, class_to_mongo(OrganisationMembership, membership))

        assert instance.user is not marc
        assert instance.user.id == marc.id
        assert is_populated(instance.user) is False
        with pytest.raises(UnpopulatedReferenceError, match="Reference User was not completely populated"):
            instance.user.name

    def test_unknown_keys_dropped(self):
        instance = mongo_to_class(SubModel, {"_id": ObjectId(), "label": "x", "other": 1})
        assert instance.__dict__ == {"label": "x"}


class TestPlain:
    """Tests for the plain (JSON-compatible) form."""

    def test_class_to_plain(self, model):
        model.preview = b"Hello"
        plain = class_to_plain(SimpleModel, model)

        assert plain["id"] == model.id
        assert plain["plan"] == 1
        assert plain["created"] == CREATED.isoformat()
        assert plain["preview"] == "SGVsbG8="
        assert plain["children"][0] == {"label": "fooo"}

    def test_plain_to_class(self):
        instance = plain_to_class(
            SimpleModel,
            {"name": "peter", "plan": 2, "created": "2018-10-13T12:17:35+00:00", "preview": "SGVsbG8="},
        )
        assert instance.plan is Plan.ENTERPRISE
        assert instance.created == CREATED
        assert instance.preview == b"Hello"

    def test_invalid_enum(self):
        with pytest.raises(ConversionError, match="plan"):
            plain_to_class(SimpleModel, {"plan": 99})

    def test_plain_to_mongo(self):
        mongo = plain_to_mongo(SimpleModel, {"name": "peter", "children": [{"label": 3}], "type": "5"})
        assert mongo == {"name": "peter", "children": [{"label": "3"}], "type": 5}

    def test_absent_stays_absent(self):
        assert plain_to_mongo(SimpleModel, {}) == {}
        assert plain_to_mongo(SimpleModel, {"name": None}) == {"name": None}

    def test_unknown_nested_keys_do_not_fail(self):
        """Marshalling does not validate."""
        mongo = plain_to_mongo(SimpleModel, {"name": "peter", "children": [{"name": "p"}, {"age": 2}, {}]})
        assert mongo["children"] == [{}, {}, {}]

    def test_any_is_not_copied(self):
        any_value = {"peter": 1}
        mongo = plain_to_mongo(SimpleModel, {"name": "peter", "any_field": any_value})
        assert mongo["any_field"] is any_value

    def test_array_given_mapping(self):
        assert plain_to_mongo(SimpleModel, {"types": {}}) == {"types": []}

    def test_map_given_list(self):
        assert plain_to_mongo(SimpleModel, {"children_map": []}) == {"children_map": {}}

    def test_mongo_to_plain(self):
        uid = uuid.uuid4()
        plain = mongo_to_plain(SimpleModel, {"_id": ObjectId(), "id": Binary.from_uuid(uid), "preview": None})
        assert plain == {"id": str(uid), "preview": None}

    def test_entity_round_trip(self):
        admin = User(name="admin")
        marc = User(name="marc", manager=admin)

        data = marc.to_dict()
        assert data == {"id": marc.id, "name": "marc", "manager": admin.id}

        restored = User.from_dict(data)
        assert restored.name == "marc"
        assert restored.manager.id == admin.id


class TestConvertFilter:
    """Tests for convert_filter()."""

    def test_entity_and_key_values(self):
        marc = User(name="marc")
        apple = Organisation(name="Apple", owner=marc)

        converted = convert_filter(
            OrganisationMembership,
            {"user": marc, "organisation": {"$in": [apple.id]}},
        )
        assert converted == {
            "user": Binary.from_uuid(uuid.UUID(marc.id)),
            "organisation": {"$in": [Binary.from_uuid(uuid.UUID(apple.id))]},
        }

    def test_logical_operators(self):
        marc = User(name="marc")
        converted = convert_filter(User, {"$or": [{"id": marc.id}, {"name": "peter"}]})
        assert converted == {"$or": [{"id": Binary.from_uuid(uuid.UUID(marc.id))}, {"name": "peter"}]}

    def test_untyped_operators_kept(self):
        query = {"manager": {"$exists": True}, "name": {"$regex": "^m", "$options": "i"}}
        assert convert_filter(User, query) == query

    def test_array_element(self):
        """A scalar compared to an array property converts as an element."""
        assert convert_filter(SimpleModel, {"types": 5}) == {"types": "5"}
        assert convert_filter(SimpleModel, {"types": {"$all": [1, 2]}}) == {"types": {"$all": ["1", "2"]}}

    def test_unknown_paths_pass_through(self):
        assert convert_filter(User, {"unknown.path": 1}) == {"unknown.path": 1}
