"""
User store: async SQLAlchemy access to the users table.

Every session is rolled back on error and every SQLAlchemy exception leaves
this module as a UserStoreError, so handlers never see driver-specific types.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from loguru import logger
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from models import Base, User

# Champ absent du body (différent de None explicite)
UNSET = object()


class UserStoreError(Exception):
    """Any failure raised by the user store."""

    def __init__(self, message: str, error_type: str = "store_error"):
        super().__init__(message)
        self.error_type = error_type


class UserNotFoundError(UserStoreError):
    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found", "not_found")
        self.user_id = user_id


class UserStore:
    """Process-wide handle on the users table, created once at startup."""

    def __init__(self, database_url: str):
        self.engine = create_async_engine(database_url, pool_pre_ping=True)
        self._session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session with rollback and error mapping on exception."""
        session = self._session_factory()
        try:
            yield session
        except IntegrityError as e:
            await session.rollback()
            logger.error(f"DB integrity error: {e}")
            raise UserStoreError("Integrity constraint violated", "integrity_error") from e
        except OperationalError as e:
            await session.rollback()
            logger.error(f"DB operational error: {e}")
            raise UserStoreError("Connection or operational error", "operational_error") from e
        except DBAPIError as e:
            await session.rollback()
            logger.error(f"DB driver error: {e}")
            raise UserStoreError("Database driver error", "driver_error") from e
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"SQLAlchemy error: {e}")
            raise UserStoreError("Database operation failed") from e
        except (OverflowError, ValueError) as e:
            # Erreurs du driver non enveloppées par SQLAlchemy (ex: entier trop grand)
            await session.rollback()
            logger.error(f"DB driver error: {e}")
            raise UserStoreError("Database driver error", "driver_error") from e
        finally:
            await session.close()

    async def create_schema(self):
        # Equivalent d'un "db push": crée la table si elle n'existe pas
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            logger.error(f"Schema creation failed: {e}")
            raise UserStoreError("Schema creation failed", "schema_error") from e

    async def create(self, name: Optional[str], email: Optional[str]) -> User:
        async with self.session() as db:
            user = User(name=name, email=email)
            db.add(user)
            await db.commit()
            return user

    async def find_all(self) -> List[User]:
        async with self.session() as db:
            result = await db.execute(select(User))
            return list(result.scalars().all())

    async def find_unique(self, user_id: int) -> Optional[User]:
        async with self.session() as db:
            return await db.get(User, user_id)

    async def update(self, user_id: int, name=UNSET, email=UNSET) -> User:
        """Update name/email in place; omitted fields are not touched, an explicit None is written."""
        async with self.session() as db:
            user = await db.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            if name is not UNSET:
                user.name = name
            if email is not UNSET:
                user.email = email
            await db.commit()
            return user

    async def delete(self, user_id: int) -> User:
        async with self.session() as db:
            user = await db.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            await db.delete(user)
            await db.commit()
            return user

    async def health_check(self) -> bool:
        """Check database connectivity (for /health)."""
        try:
            async with self.session() as db:
                await db.execute(text("SELECT 1"))
            return True
        except UserStoreError as e:
            logger.error(f"DB health check failed: {e}")
            return False

    async def dispose(self):
        await self.engine.dispose()
