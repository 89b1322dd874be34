"""
This module contains the database setup and session management for the seat booking service.
"""
import logging
from typing import Any, AsyncGenerator

from alchemical.aio import Alchemical
from fastapi import Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Operator
from .whatsapp import normalize_phone

logger = logging.getLogger(__name__)


def create_store(url: str) -> Alchemical:
    """
    Creates a store handle for the given database URL.

    The handle is passed to every component that needs the database, so tests
    can hand each component a fresh store.
    """
    engine_options = {}
    if url.startswith("sqlite"):
        # Writers wait for each other instead of failing with "database is locked".
        engine_options["connect_args"] = {"timeout": 30}
    return Alchemical(url, engine_options=engine_options,
                      session_options={"expire_on_commit": False})


def get_db(request: Request) -> Alchemical:
    """
    Dependency that provides the application's store handle.
    """
    return request.app.state.db


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession | Any, Any]:
    """
    Dependency that provides a database session.
    """
    async with get_db(request).Session() as session:
        yield session


async def create_db_and_tables(db: Alchemical):
    """
    Creates the database and tables.
    """
    await db.create_all()


async def ensure_operator(db: Alchemical, phone_number: str, name: str) -> Operator:
    """
    Seeds the operator record if it does not exist yet.

    Args:
        db (Alchemical): The store handle.
        phone_number (str): The operator's WhatsApp number, in any format.
        name (str): The operator's display name.

    Returns:
        Operator: The existing or newly created operator.
    """
    phone_number = normalize_phone(phone_number)
    async with db.Session() as session:
        operator = await session.scalar(
            select(Operator).where(Operator.phone_number == phone_number)
        )
        if operator:
            logger.info(f"Operator {operator.id} already exists, skipping seed")
            return operator

        operator = Operator(name=name, phone_number=phone_number, approved=True)
        session.add(operator)
        await session.commit()
        logger.info(f"Operator {operator.id} created for {phone_number}")
        return operator
