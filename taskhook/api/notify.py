"""
Inbound task-completed webhook (notification service).
"""
import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from taskhook.api.deps import get_receiver
from taskhook.core.exceptions import PayloadMalformedError
from taskhook.schemas import NotifyResponse
from taskhook.services.receiver import NotificationReceiver

router = APIRouter(tags=["notify"])


@router.post(
    "/notify",
    status_code=201,
    responses={201: {"model": NotifyResponse}, 200: {"model": NotifyResponse}},
)
async def notify(request: Request, receiver: NotificationReceiver = Depends(get_receiver)):
    """
    Receive a signed task-completed webhook.

    - 201: first delivery, notification created
    - 200: duplicate delivery, original notification id returned
    - 401: missing or invalid X-Signature
    - 400: malformed payload
    """
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else None
    except ValueError:
        raise PayloadMalformedError("Request body must be valid JSON")

    signature = request.headers.get("X-Signature")
    result = await run_in_threadpool(receiver.receive, signature, payload)

    return JSONResponse(
        status_code=201 if result.created else 200,
        content={
            "data": {
                "message": (
                    "Notification received successfully"
                    if result.created
                    else "Notification already received"
                ),
                "notification_id": result.notification_id,
            }
        },
    )
