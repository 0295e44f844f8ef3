"""User preference routes — read and update the settings collaborator."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from step_mood.api.state import get_services

router = APIRouter(prefix="/preferences", tags=["preferences"])


@router.get("")
async def get_preferences():
    prefs = await get_services().preferences.load()
    return prefs.model_dump()


@router.put("")
async def update_preferences(values: dict[str, Any]):
    try:
        prefs = await get_services().preferences.update(values)
    except ValidationError as exc:
        raise HTTPException(422, exc.errors(include_url=False)) from exc
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return prefs.model_dump()
