"""
Configuration et initialisation de la base de données pour core-healthcard-review.

Base de données: PostgreSQL avec SQLAlchemy 2.0 et AsyncSession
"""

import logging
from collections.abc import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings

logger = logging.getLogger(__name__)

# Conventions de nommage stables pour les contraintes (Alembic autogenerate)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class pour tous les modèles SQLAlchemy."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# Engine SQLAlchemy 2.0
engine = create_async_engine(str(settings.SQLALCHEMY_DATABASE_URI), echo=False)

# Session factory
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Obtient une session de base de données."""
    async with async_session_maker() as session:
        yield session


async def create_db_and_tables():
    """Crée toutes les tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Tables de base de données vérifiées")

