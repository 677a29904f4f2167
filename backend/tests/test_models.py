# tests/test_models.py - Schema constraints and optimistic locking
import pytest
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from models import Base, User, Ticket
from tests.conftest import create_ticket, create_user


@pytest.mark.asyncio
class TestConstraints:
    async def test_user_with_tickets_cannot_be_hard_deleted(self, db_session, admin_user, dev_user, project):
        await create_ticket(db_session, project, admin_user, assignee=dev_user)
        with pytest.raises(IntegrityError):
            await db_session.execute(delete(User).where(User.id == dev_user.id))
        await db_session.rollback()

    async def test_active_email_is_unique(self, db_session, roles, dev_user):
        with pytest.raises(IntegrityError):
            await create_user(db_session, roles["Developer"], "dev-two", "dev@omnitak.com")
        await db_session.rollback()

    async def test_active_name_is_unique_ignoring_case(self, db_session, roles, dev_user):
        with pytest.raises(IntegrityError):
            await create_user(db_session, roles["Developer"], "DeV", "dev.two@omnitak.com")
        await db_session.rollback()

    async def test_deleted_rows_free_email_and_name(self, db_session, roles):
        await create_user(db_session, roles["Developer"], "sam", "sam@omnitak.com", deleted=True)
        await create_user(db_session, roles["Developer"], "sam", "sam@omnitak.com", deleted=True)
        user = await create_user(db_session, roles["Developer"], "sam", "sam@omnitak.com")
        assert user.id is not None

    def test_only_project_paths_cascade(self):
        """No foreign key pointing at users cascades; tickets and comments follow their parents"""
        cascading = set()
        for table in Base.metadata.tables.values():
            for fk in table.foreign_keys:
                if fk.ondelete == "CASCADE":
                    cascading.add((table.name, fk.column.table.name))
                if fk.column.table.name == "users":
                    assert fk.ondelete == "RESTRICT", f"{table.name}.{fk.parent.name}"
        assert cascading == {("tickets", "projects"), ("comments", "tickets")}


@pytest.mark.asyncio
class TestOptimisticLocking:
    async def test_version_increments(self, db_session, admin_user, project):
        ticket = await create_ticket(db_session, project, admin_user)
        assert ticket.version == 1
        ticket.title = "Renamed"
        await db_session.commit()
        assert ticket.version == 2

    async def test_concurrent_update_is_detected(self, db_engine, db_session, admin_user, project):
        ticket = await create_ticket(db_session, project, admin_user)
        ticket_id = ticket.id
        factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

        async with factory() as first, factory() as second:
            a = await first.get(Ticket, ticket_id)
            b = await second.get(Ticket, ticket_id)

            a.title = "First writer"
            await first.commit()

            b.title = "Second writer"
            with pytest.raises(StaleDataError):
                await second.commit()
            await second.rollback()
