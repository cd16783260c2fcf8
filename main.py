import asyncio
import logging
from datetime import datetime

import telnyx
from fastapi import FastAPI, Request, HTTPException, status, BackgroundTasks
from fastapi.responses import PlainTextResponse

from app.runtime import Services, open_services
from app.types.reminder import MessageRef
from app.utils.dates import unix_now
from config import settings

logging.basicConfig(
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    level=settings.LOG_LEVEL,
)
_LOGGER = logging.getLogger("main")

# Configure telnyx public key
if settings.TELNYX_PUBLIC_KEY:
    telnyx.public_key = settings.TELNYX_PUBLIC_KEY

app = FastAPI()

# Store and services are opened on startup and closed on shutdown

@app.on_event("startup")
async def startup_event():
    services = await open_services()
    app.state.services = services
    app.state.sweep_task = None
    if settings.SWEEP_MODE == "inline":
        app.state.sweep_stop = asyncio.Event()
        app.state.sweep_task = asyncio.create_task(
            services.sweeper.run_forever(settings.SWEEP_INTERVAL_SEC, app.state.sweep_stop)
        )
        _LOGGER.info("Inline sweep every %.0fs", settings.SWEEP_INTERVAL_SEC)

@app.on_event("shutdown")
async def shutdown_event():
    task = app.state.sweep_task
    if task is not None:
        # In-flight dispatches are abandoned; unsent reminders stay stored
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await app.state.services.close()


def _services(request: Request) -> Services:
    return request.app.state.services

# --------------------------------------------
# Payload -> MessageRef
# --------------------------------------------

def _epoch(value) -> int:
    if not value:
        return unix_now()
    return int(datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp())


def message_from_payload(payload: dict) -> MessageRef | None:
    sender = payload.get("from") or payload.get("from_", {})
    if hasattr(sender, "to_dict"):
        sender = sender.to_dict()
    from_num = sender.get("phone_number")
    if not from_num or not payload.get("id"):
        return None

    to = payload.get("to") or []
    recipient = to[0].get("phone_number") if to and isinstance(to[0], dict) else None
    return MessageRef(
        id=payload["id"],
        sender=from_num,
        recipient=recipient,
        channel="sms",
        text=(payload.get("text") or "").strip(),
        created_at=_epoch(payload.get("received_at") or payload.get("occurred_at")),
    )

# --------------------------------------------
# Endpoints
# --------------------------------------------

@app.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    return PlainTextResponse("OK")


@app.post("/v1/sms/telnyx", response_class=PlainTextResponse)
async def telnyx_webhook(request: Request, background: BackgroundTasks):
    raw_body = await request.body()
    sig = request.headers.get("telnyx-signature-ed25519")
    ts = request.headers.get("telnyx-timestamp")

    try:
        if settings.TELNYX_PUBLIC_KEY:
            event = telnyx.Webhook.construct_event(raw_body.decode(), sig, ts)
            payload = event.data["payload"]
        else:  # dev mode: skip signature verification
            payload = (await request.json())["data"]["payload"]
    except Exception:
        raise HTTPException(400, "Bad signature")

    if payload.get("type") == "ping":
        return PlainTextResponse("PONG")

    # TelnyxObject -> dict if needed
    if hasattr(payload, "to_dict"):
        payload = payload.to_dict()

    message = message_from_payload(payload)
    if message is None:
        return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)

    _LOGGER.debug("[Webhook] message %s from %s", message.id, message.sender)
    background.add_task(_services(request).commands.handle, message)
    return PlainTextResponse("OK")
