"""Tests for JSON field support."""

from __future__ import annotations

import pytest

from relkit import AsyncSession, Base, Mapped, mapped_column
from relkit.fields import JSON


class JsonProduct(Base):
    """Test model with JSON field."""

    __tablename__ = "json_products"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=100)
    metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    tags: Mapped[list | None] = mapped_column(nullable=True)


class TestJSONFieldDefinition:
    def test_json_marker(self) -> None:
        col = JsonProduct.__columns__["metadata"]
        assert col.is_json is True
        assert col.nullable is True

    def test_list_type_hint_infers_json(self) -> None:
        assert JsonProduct.__columns__["tags"].is_json is True

    def test_cast_decodes_text(self) -> None:
        col = JsonProduct.__columns__["metadata"]
        assert col.cast('{"a": [1, 2]}') == {"a": [1, 2]}
        assert col.cast({"already": "decoded"}) == {"already": "decoded"}
        assert col.cast(None) is None


@pytest.fixture
async def products_table(sqlite_pool):
    """Create products table for testing."""
    await sqlite_pool.execute("""
        CREATE TABLE IF NOT EXISTS json_products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            metadata TEXT,
            tags TEXT
        )
    """)
    return sqlite_pool


async def reload(pool, product):
    """Fetch a product through a fresh session, bypassing the identity map."""
    return await AsyncSession(pool).get(JsonProduct, product.id)


class TestJSONFieldCRUD:
    async def test_select_returns_json_as_dict(self, products_table) -> None:
        session = AsyncSession(products_table)
        await session.insert(JsonProduct(name="Widget", metadata={"color": "red", "tags": ["sale"]}))

        product = await session.query(JsonProduct).filter(name="Widget").first()
        assert isinstance(product.metadata, dict)
        assert product.metadata == {"color": "red", "tags": ["sale"]}

    async def test_update_json_field(self, products_table) -> None:
        session = AsyncSession(products_table)
        product = await session.insert(JsonProduct(name="Widget", metadata={"v": 1}))

        await session.update(product, metadata={"v": 2, "updated": True})

        assert (await reload(products_table, product)).metadata == {"v": 2, "updated": True}

    async def test_in_place_mutation_is_dirty(self, products_table) -> None:
        session = AsyncSession(products_table)
        product = await session.insert(JsonProduct(name="Widget", metadata={"v": 1}))

        product.metadata["v"] = 2

        assert product.is_dirty("metadata")
        await session.save(product)
        assert (await reload(products_table, product)).metadata == {"v": 2}

    @pytest.mark.parametrize(
        "value",
        [
            {"specs": {"dimensions": {"width": 10, "height": 20}, "weight": 1.5}},
            {"value": None},
            {},
            None,
        ],
    )
    async def test_values_survive_storage(self, products_table, value) -> None:
        session = AsyncSession(products_table)
        product = await session.insert(JsonProduct(name="P", metadata=value))

        assert (await reload(products_table, product)).metadata == value

    async def test_list_column(self, products_table) -> None:
        session = AsyncSession(products_table)
        product = await session.insert(JsonProduct(name="Tagged", tags=["a", "b"]))

        assert (await reload(products_table, product)).tags == ["a", "b"]


class TestJSONQueryOperators:
    @pytest.fixture
    async def session(self, products_table):
        session = AsyncSession(products_table)
        await session.insert_all([
            JsonProduct(name="Red", metadata={"color": "red", "count": 10, "active": True, "specs": {"weight": 2.0}}),
            JsonProduct(name="Blue", metadata={"color": "blue", "count": 20, "active": False, "specs": {"weight": 0.5}}),
        ])
        return session

    async def test_json_key_equals(self, session) -> None:
        products = await session.query(JsonProduct).filter(metadata__color="red").all()
        assert [p.name for p in products] == ["Red"]

    async def test_json_nested_key_with_lookup(self, session) -> None:
        products = await session.query(JsonProduct).filter(metadata__specs__weight__gt=1.0).all()
        assert [p.name for p in products] == ["Red"]

    async def test_json_integer_comparison(self, session) -> None:
        products = await session.query(JsonProduct).filter(metadata__count__gte=15).all()
        assert [p.name for p in products] == ["Blue"]

    async def test_json_boolean_comparison(self, session) -> None:
        products = await session.query(JsonProduct).filter(metadata__active=True).all()
        assert [p.name for p in products] == ["Red"]

    async def test_arrow_path_in_where(self, session) -> None:
        products = await session.query(JsonProduct).where("metadata->color", "blue").all()
        assert [p.name for p in products] == ["Blue"]

    async def test_order_by_json_path(self, session) -> None:
        names = await session.query(JsonProduct).order_by("metadata->count", "desc").pluck("name")
        assert names == ["Blue", "Red"]
