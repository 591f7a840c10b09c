import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_session

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    status: Literal["ok", "error"] = Field(..., description="The status of the health check")
    service: str = Field(default=settings.PROJECT_NAME, description="Service name")
    version: str = Field(default=settings.VERSION, description="Service version")


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_session)):
    """Vérifie la disponibilité du service et de la base PostgreSQL."""
    try:
        result = await db.execute(select(text("1")))
        result.scalar_one()
    except Exception as e:
        logger.error(f"Échec du health check base de données: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable") from None

    return HealthResponse(status="ok")
