"""Tests for model definition, keys and the model registry."""

import uuid
from datetime import datetime
from decimal import Decimal

import pytest
from ulid import ULID

from relkit import AsyncSession, Base, ForeignKey, Mapped, mapped_column, register_morph_map
from relkit.errors import UnknownMorphType
from relkit.registry import registry


class ModelUser(Base):
    __tablename__ = "model_users"
    __guarded__ = ("is_admin",)

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=100)
    email: Mapped[str] = mapped_column(unique=True)
    age: Mapped[int | None] = mapped_column(nullable=True)
    is_admin: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.now)


class ModelPost(Base):
    __tablename__ = "model_posts"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(max_length=200)
    author_id: Mapped[int] = mapped_column(ForeignKey("model_users.id"))


class UuidDoc(Base):
    __tablename__ = "uuid_docs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    title: Mapped[str]


class UlidEvent(Base):
    __tablename__ = "ulid_events"

    id: Mapped[ULID] = mapped_column(primary_key=True)
    kind: Mapped[str]
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)


def test_model_columns_and_primary_key():
    assert set(ModelUser.__columns__) == {"id", "name", "email", "age", "is_admin", "created_at"}
    assert ModelUser.__primary_key__ == "id"
    assert ModelPost.__primary_key__ == "id"


def test_default_tablename():
    class Widget(Base):
        id: Mapped[int] = mapped_column(primary_key=True)

    assert Widget.__tablename__ == "widgets"


def test_model_column_properties():
    assert ModelUser.__columns__["id"].primary_key is True
    assert ModelUser.__columns__["name"].max_length == 100
    assert ModelUser.__columns__["email"].unique is True
    assert ModelUser.__columns__["age"].nullable is True


def test_model_foreign_key():
    fk = ModelPost.__columns__["author_id"].foreign_key
    assert fk.target == "model_users.id"
    assert fk.table == "model_users"
    assert fk.column == "id"


def test_key_types():
    assert ModelUser.__columns__["id"].key_type == "auto"
    assert UuidDoc.__columns__["id"].key_type == "uuid"
    assert UlidEvent.__columns__["id"].key_type == "ulid"


def test_model_instantiation_applies_defaults():
    user = ModelUser(name="Alice", email="alice@example.com")

    assert user.name == "Alice"
    assert user.is_admin is False
    assert user.age is None
    assert isinstance(user.created_at, datetime)
    assert user.id is None
    assert not user.exists


def test_unknown_attribute_rejected():
    with pytest.raises(TypeError):
        ModelUser(nickname="al")


def test_to_dict_and_from_dict():
    user = ModelUser.from_dict({"name": "Bob", "email": "bob@example.com", "age": 25, "ignored": 1})

    data = user.to_dict()
    assert data["name"] == "Bob"
    assert data["age"] == 25
    assert "ignored" not in data


def test_model_repr():
    user = ModelUser(name="Alice", email="alice@example.com")
    user.id = 1
    assert repr(user) == "<ModelUser id=1>"


def test_guarded_columns_are_not_fillable():
    assert ModelUser.fillable_columns() == {"name", "email", "age", "created_at"}


def test_registry_lookup():
    assert registry.get("model_users") is ModelUser
    assert registry.get("ModelPost") is ModelPost
    assert registry.resolve("ModelPost", ModelUser) is ModelPost
    with pytest.raises(LookupError):
        registry.resolve("NoSuchModel")


def test_morph_map():
    class MorphTarget(Base):
        __tablename__ = "morph_targets"
        id: Mapped[int] = mapped_column(primary_key=True)

    assert MorphTarget.get_morph_class() == "MorphTarget"

    register_morph_map({"morph_target": MorphTarget})

    assert MorphTarget.get_morph_class() == "morph_target"
    assert registry.morph_model("morph_target") is MorphTarget
    with pytest.raises(UnknownMorphType):
        registry.morph_model("never_registered")


@pytest.fixture
async def session(sqlite_pool):
    await sqlite_pool.execute("CREATE TABLE uuid_docs (id TEXT PRIMARY KEY, title TEXT NOT NULL)")
    await sqlite_pool.execute("CREATE TABLE ulid_events (id TEXT PRIMARY KEY, kind TEXT NOT NULL, amount TEXT)")
    return AsyncSession(sqlite_pool)


async def test_uuid_keys_generated_on_insert(session):
    docs = await session.insert_all([UuidDoc(title="a"), UuidDoc(title="b")])

    assert all(isinstance(d.id, uuid.UUID) for d in docs)
    assert docs[0].id != docs[1].id

    loaded = await AsyncSession(session.pool).get(UuidDoc, docs[0].id)
    assert loaded.id == docs[0].id
    assert loaded.title == "a"


async def test_explicit_uuid_kept(session):
    key = uuid.uuid4()
    doc = await session.insert(UuidDoc(id=key, title="fixed"))
    assert doc.id == key


async def test_ulid_keys_round_trip(session):
    event = await session.insert(UlidEvent(kind="created", amount=Decimal("1.50")))

    assert isinstance(event.id, ULID)

    loaded = await AsyncSession(session.pool).get(UlidEvent, event.id)
    assert loaded.id == event.id
    assert isinstance(loaded.id, ULID)
    assert loaded.amount == Decimal("1.50")
