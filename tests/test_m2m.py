"""Tests for many-to-many relationships and pivot operations."""

from __future__ import annotations

import pytest

from relkit import (
    AsyncSession,
    Base,
    ConstraintViolation,
    Mapped,
    Pivot,
    SyncResult,
    belongs_to_many,
    has_many,
    mapped_column,
    selectinload,
)
from relkit.pivot import ManyToManyCollection


class M2mUser(Base):
    __tablename__ = "m2m_users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=100)
    roles: Mapped[list[M2mRole]] = belongs_to_many(
        "M2mRole", "m2m_role_user", "user_id", "role_id", pivot_columns=["granted_by"]
    )
    badges: Mapped[list[M2mBadge]] = has_many("M2mBadge", "user_id")


class M2mRole(Base):
    __tablename__ = "m2m_roles"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=50)
    users: Mapped[list[M2mUser]] = belongs_to_many("M2mUser", "m2m_role_user", "role_id", "user_id")


class M2mBadge(Base):
    __tablename__ = "m2m_badges"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int]


@pytest.fixture
async def pool(sqlite_pool):
    """Create tables for M2M testing with three users and three roles."""
    await sqlite_pool.execute("CREATE TABLE m2m_users (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)")
    await sqlite_pool.execute("CREATE TABLE m2m_roles (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)")
    await sqlite_pool.execute("CREATE TABLE m2m_badges (id INTEGER PRIMARY KEY AUTOINCREMENT, user_id INTEGER)")
    await sqlite_pool.execute(
        """
        CREATE TABLE m2m_role_user (
            user_id INTEGER NOT NULL REFERENCES m2m_users(id) ON DELETE CASCADE,
            role_id INTEGER NOT NULL REFERENCES m2m_roles(id) ON DELETE CASCADE,
            granted_by TEXT,
            PRIMARY KEY (user_id, role_id)
        )
        """
    )
    await sqlite_pool.execute("INSERT INTO m2m_users (name) VALUES ('Alice'), ('Bob'), ('Charlie')")
    await sqlite_pool.execute("INSERT INTO m2m_roles (name) VALUES ('admin'), ('editor'), ('viewer')")
    return sqlite_pool


@pytest.fixture
async def session(pool):
    return AsyncSession(pool)


@pytest.fixture
async def alice(session):
    return await session.query(M2mUser).where("name", "Alice").first()


async def role_keys(session, user):
    rows = await session.table("m2m_role_user").where("user_id", user.id).order_by("role_id").pluck("role_id")
    return list(rows)


class TestPivotDefinition:
    def test_explicit_pivot_layout(self):
        spec = M2mUser.__relationships__["roles"].pivot

        assert spec.table == "m2m_role_user"
        assert spec.foreign_pivot_key == "user_id"
        assert spec.related_pivot_key == "role_id"
        assert spec.selected_columns == ["user_id", "role_id", "granted_by"]

    def test_default_pivot_layout(self):
        class M2mGroup(Base):
            __tablename__ = "m2m_groups"

            id: Mapped[int] = mapped_column(primary_key=True)
            members: Mapped[list[M2mUser]] = belongs_to_many("M2mUser")

        spec = M2mGroup.__relationships__["members"].pivot
        assert spec.table == "m2m_group_m2m_user"
        assert spec.foreign_pivot_key == "m2m_group_id"
        assert spec.related_pivot_key == "m2m_user_id"


class TestPivotManager:
    async def test_attach_keys_and_models(self, session, alice):
        editor = await session.query(M2mRole).where("name", "editor").first()

        count = await session.pivot(alice, "roles").attach([1, editor])

        assert count == 2
        assert await role_keys(session, alice) == [1, 2]

    async def test_attach_with_attributes(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach({1: {"granted_by": "root"}, 2: {}}, {"granted_by": "system"})

        assert await roles.attached() == {1: {"granted_by": "root"}, 2: {"granted_by": "system"}}

    async def test_attach_rejects_duplicates_in_one_call(self, session, alice, query_log):
        log = query_log(session.pool)

        with pytest.raises(ValueError, match="Duplicate"):
            await session.pivot(alice, "roles").attach([1, "1"])

        assert log.statements == []

    async def test_attach_existing_row(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach(1, {"granted_by": "a"})

        with pytest.raises(ConstraintViolation):
            await roles.attach(1)

        await roles.attach(1, {"granted_by": "b"}, upsert=True)
        assert await roles.attached() == {1: {"granted_by": "b"}}

    async def test_detach(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach([1, 2, 3])

        assert await roles.detach(2) == 1
        assert sorted(await roles.attached_keys()) == [1, 3]
        assert await roles.detach() == 2
        assert await roles.attached_keys() == []

    async def test_detach_only_touches_owner(self, session, alice):
        bob = await session.query(M2mUser).where("name", "Bob").first()
        await session.pivot(alice, "roles").attach([1, 2])
        await session.pivot(bob, "roles").attach([1])

        await session.pivot(alice, "roles").detach()

        assert await role_keys(session, bob) == [1]

    async def test_sync(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach([1, 2])

        result = await roles.sync([2, 3])

        assert result == SyncResult(attached=[3], detached=[1], updated=[])
        assert await role_keys(session, alice) == [2, 3]

    async def test_sync_is_idempotent(self, session, alice, query_log):
        roles = session.pivot(alice, "roles")
        first = await roles.sync({1: {"granted_by": "root"}, 3: {}})
        log = query_log(session.pool)

        second = await roles.sync({1: {"granted_by": "root"}, 3: {}})

        assert first.changed
        assert not second.changed
        writes = [e for e in log.statements if not e.sql.startswith("SELECT")]
        assert writes == []

    async def test_sync_updates_changed_attributes(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach({1: {"granted_by": "a"}, 2: {"granted_by": "a"}})

        result = await roles.sync({1: {"granted_by": "b"}, 2: {"granted_by": "a"}})

        assert result.updated == [1]
        assert (await roles.attached())[1] == {"granted_by": "b"}

    async def test_sync_rejects_duplicates(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach([1])

        with pytest.raises(ValueError):
            await roles.sync([2, 2])

        assert await roles.attached_keys() == [1]

    async def test_sync_without_detaching(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach([1])

        result = await roles.sync_without_detaching([2])

        assert result.detached == []
        assert sorted(await roles.attached_keys()) == [1, 2]

    async def test_toggle(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach([1, 2])

        result = await roles.toggle([2, 3])

        assert result.detached == [2]
        assert result.attached == [3]
        assert sorted(await roles.attached_keys()) == [1, 3]

    async def test_update_existing_pivot(self, session, alice):
        roles = session.pivot(alice, "roles")
        await roles.attach(1)

        assert await roles.update_existing_pivot(1, {"granted_by": "ops"}) == 1
        assert await roles.attached() == {1: {"granted_by": "ops"}}

    async def test_changes_invalidate_loaded_relation(self, session):
        alice = await session.query(M2mUser).where("name", "Alice").with_("roles").first()
        assert alice.relation_loaded("roles")

        await session.pivot(alice, "roles").attach(1)

        assert not alice.relation_loaded("roles")
        assert [r.name for r in await session.fetch_relation(alice, "roles")] == ["admin"]

    async def test_sync_rolls_back_with_transaction(self, session, alice):
        with pytest.raises(RuntimeError):
            async with session.begin():
                await session.pivot(alice, "roles").sync([1, 2])
                raise RuntimeError("abort")

        assert await role_keys(session, alice) == []

    async def test_requires_many_to_many(self, session, alice):
        with pytest.raises(TypeError):
            session.pivot(alice, "badges")

    def test_requires_saved_owner(self, session):
        with pytest.raises(ValueError, match="saved"):
            session.pivot(M2mUser(name="new"), "roles")


class TestEagerLoading:
    async def test_load_with_pivot_attributes(self, session, alice):
        await session.pivot(alice, "roles").attach({1: {"granted_by": "root"}, 3: {"granted_by": "ops"}})

        users = await session.query(M2mUser).order_by("id").options(selectinload("roles")).get()

        loaded = {r.name: r for r in users[0].roles}
        assert set(loaded) == {"admin", "viewer"}
        assert isinstance(loaded["admin"].pivot, Pivot)
        assert loaded["admin"].pivot.granted_by == "root"
        assert loaded["viewer"].pivot["granted_by"] == "ops"
        assert loaded["admin"].pivot.user_id == alice.id
        assert users[1].roles == []

    async def test_shared_related_rows_keep_own_pivot(self, session):
        users = await session.query(M2mUser).order_by("id").get()
        await session.pivot(users[0], "roles").attach(1, {"granted_by": "a"})
        await session.pivot(users[1], "roles").attach(1, {"granted_by": "b"})

        await session.load(users, "roles")

        assert users[0].roles[0].pivot.granted_by == "a"
        assert users[1].roles[0].pivot.granted_by == "b"

    async def test_inverse_side(self, session):
        users = await session.query(M2mUser).order_by("id").get()
        await session.pivot(users[0], "roles").attach([1, 2])
        await session.pivot(users[1], "roles").attach([1])

        roles = await session.query(M2mRole).order_by("id").with_("users").get()

        assert sorted(u.name for u in roles[0].users) == ["Alice", "Bob"]
        assert [u.name for u in roles[1].users] == ["Alice"]
        assert roles[2].users == []

    async def test_loaded_collection_type(self, session, alice):
        await session.pivot(alice, "roles").attach(1)
        await session.load(alice, "roles")

        assert isinstance(alice.roles, ManyToManyCollection)


class TestManyToManyCollection:
    async def test_add_is_idempotent(self, session, alice):
        await session.load(alice, "roles")
        admin = await session.get(M2mRole, 1)

        await alice.roles.add(admin)
        await alice.roles.add(admin)

        assert len(alice.roles) == 1
        assert await role_keys(session, alice) == [1]

    async def test_add_with_pivot_attributes(self, session, alice):
        await session.load(alice, "roles")
        editor = await session.get(M2mRole, 2)

        await alice.roles.add(editor, granted_by="root")

        assert await session.pivot(alice, "roles").attached() == {2: {"granted_by": "root"}}

    async def test_remove_and_clear(self, session, alice):
        await session.pivot(alice, "roles").attach([1, 2, 3])
        await session.load(alice, "roles")
        viewer = next(r for r in alice.roles if r.name == "viewer")

        await alice.roles.remove(viewer)
        assert await role_keys(session, alice) == [1, 2]
        assert len(alice.roles) == 2

        await alice.roles.clear()
        assert await role_keys(session, alice) == []
        assert len(alice.roles) == 0
