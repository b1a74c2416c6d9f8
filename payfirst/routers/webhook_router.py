import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as PydanticValidationError

from payfirst.dependencies import get_callback_receiver
from payfirst.errors import SignatureMismatch, ValidationError
from payfirst.services.callbacks import CallbackReceiver, DuitkuCallback

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["duitku-webhooks"])


async def _parse_callback(request: Request) -> DuitkuCallback:
    # Duitku posts x-www-form-urlencoded; JSON is accepted for manual replays
    try:
        if request.headers.get("content-type", "").startswith("application/json"):
            data = await request.json()
        else:
            data = dict(await request.form())
        return DuitkuCallback.model_validate(data)
    except (json.JSONDecodeError, PydanticValidationError, TypeError, ValueError):
        raise ValidationError("Malformed callback payload")


@router.post("/duitku")
async def duitku_callback(request: Request, receiver: CallbackReceiver = Depends(get_callback_receiver)):
    """Gateway callback. Acknowledged unless the signature is wrong or the payload unreadable."""
    payload = await _parse_callback(request)
    try:
        outcome = await receiver.handle(payload)
    except (SignatureMismatch, ValidationError):
        raise
    except Exception:
        # Acknowledge anyway; the status query fallback recovers the transition
        logger.exception(f"Error processing Duitku callback for {payload.merchantOrderId}")
        return {"status": "OK", "message": "Callback received"}

    return {"status": "OK", "message": "Callback processed", "outcome": outcome.value}
