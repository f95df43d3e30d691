"""Donation webhook (Ko-fi style): turns a donation into whitelist entries."""
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from bot.errors import ValidationError
from bot.services.container import Services
from web.api.utils import get_services

logger = logging.getLogger("roster.api.donations")

router = APIRouter(prefix="/api/donations", tags=["donations"])


def _check_token(services: Services, authorization: Optional[str], token: Optional[str]) -> None:
    expected = services.settings.donation_webhook_token
    if not expected:
        raise HTTPException(503, "Donation webhook not configured")
    provided = token or authorization or ""
    if provided.removeprefix("Bearer ").strip() != expected:
        logger.warning("Rejected donation webhook with a bad token")
        raise HTTPException(401, "Unauthorized")


async def _read_payload(request: Request) -> dict:
    """Direct JSON, or JSON wrapped in a `data` field the way Ko-fi sends it."""
    try:
        body = await request.json()
    except ValueError as e:
        raise HTTPException(400, "Invalid donation data format") from e
    if isinstance(body, dict) and "data" in body:
        body = body["data"]
        if isinstance(body, str):
            try:
                body = json.loads(body)
            except ValueError as e:
                raise HTTPException(400, "Invalid donation data format") from e
    if not isinstance(body, dict):
        raise HTTPException(400, "Invalid donation data format")
    return body


@router.post("/webhook")
async def donation_webhook(
    request: Request,
    token: Optional[str] = None,
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Rejected donations still answer 200 with success=false so the platform does not retry them."""
    _check_token(services, authorization, token)
    data = await _read_payload(request)
    if not data.get("from_name") or not data.get("amount"):
        raise HTTPException(400, "Missing required fields: from_name, amount")

    transaction_id = str(data.get("kofi_transaction_id") or data.get("transaction_id") or data.get("message_id") or "")
    if not transaction_id:
        raise HTTPException(400, "Missing transaction id")
    try:
        result = await services.donations.process_donation(
            transaction_id=transaction_id,
            from_name=str(data["from_name"]),
            amount=data["amount"],
            message=data.get("message"),
            email=data.get("email"),
        )
    except ValidationError as e:
        logger.warning("Donation %s rejected: %s", transaction_id, e)
        return JSONResponse({"success": False, "error": str(e)})

    return {
        "success": not result.errors,
        "partial": result.partial,
        "granted": [e.steam_id64 for e in result.entries],
        "duplicates": result.duplicates,
        "errors": result.errors,
        "duration": f"{result.tier.duration_value} {result.tier.duration_type}",
    }
