from fastapi import APIRouter, Request, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from ..db import get_db, ConfigurationError
from ..schemas.pydantic_schemas import RetellWebhookPayload
from ..services.call_pipeline import PROCESSED_EVENTS, UnresolvedUserError, process_call_event
import os, hmac, hashlib, json
import logging

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()

def verify_signature(request_body: bytes, signature: str) -> bool:
    secret = os.getenv("RETELL_WEBHOOK_SECRET")
    if not secret:
        return True  # allow in local dev
    digest = hmac.new(secret.encode(), request_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature or "")

@router.post("/webhook")
async def retell_webhook(request: Request):
    body = await request.body()
    sig = request.headers.get("x-retell-signature", "")

    if not verify_signature(body, sig):
        logger.warning("Webhook signature verification failed")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        data = json.loads(body.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("webhook body is not a JSON object")
        event = data.get("event")
        logger.info(f"Webhook event received: {event}")

        # Only the events we act on have to match the call model
        if event not in PROCESSED_EVENTS:
            logger.info(f"Ignoring event type: {event}")
            return {"received": True, "processed": False}

        payload = RetellWebhookPayload.model_validate(data)
        if payload.call is None:
            raise ValueError(f"{payload.event} event without call payload")

        db = get_db()
        return await process_call_event(payload.event, payload.call, db)
    except UnresolvedUserError as e:
        logger.error(str(e))
        return JSONResponse(status_code=400, content={"error": "Could not determine user_id for call"})
    except ConfigurationError as e:
        logger.error(str(e))
        return JSONResponse(status_code=500, content={"error": str(e)})
    except (ValueError, ValidationError) as e:
        # json.JSONDecodeError is a ValueError
        logger.error(f"Malformed webhook payload: {e}")
        return JSONResponse(status_code=500, content={"error": f"Malformed webhook payload: {e}"})
    except Exception as e:
        logger.exception("Fatal error processing webhook")
        return JSONResponse(status_code=500, content={"error": str(e) or "Unknown error"})
