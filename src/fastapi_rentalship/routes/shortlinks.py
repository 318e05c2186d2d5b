"""Short link redirect endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse

from fastapi_rentalship.dependencies import get_shortener

router = APIRouter()


@router.get("/r/{code}")
async def follow_short_link(
    code: str,
    shortener=Depends(get_shortener),
) -> RedirectResponse:
    resolve = getattr(shortener, "resolve", None)
    target = await resolve(code) if resolve is not None else None
    if target is None:
        raise HTTPException(
            status_code=404, detail="Link expired or not found"
        )
    return RedirectResponse(target, status_code=302)
