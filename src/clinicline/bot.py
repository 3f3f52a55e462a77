import logging
import os

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import PlainTextResponse, Response

from clinicline import prompts, twiml
from clinicline.booking import SlotCoordinator
from clinicline.classification import IntentClassifier
from clinicline.config import Settings, validate_config
from clinicline.dashboard_sync import DashboardClient
from clinicline.messaging import TwilioMessenger
from clinicline.processor import TurnProcessor
from clinicline.scheduling import ClinikoClient
from clinicline.session_store import InMemorySessionStore, RedisSessionStore
from clinicline.state_machine import StateMachine


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


load_dotenv()
validate_config()
configure_logging(Settings.from_env())

logger = logging.getLogger(__name__)

app = FastAPI(title="Clinicline Voice Receptionist")

# Provider statuses that mean the call is over.
FINAL_STATUSES = {"completed", "busy", "failed", "no-answer", "canceled"}


def build_processor(settings: Settings) -> TurnProcessor:
    """Wire the turn processor and its collaborators from settings."""
    if settings.redis_url:
        store = RedisSessionStore.from_url(settings.redis_url)
        logger.info("Session store: redis")
    else:
        store = InMemorySessionStore()
        logger.warning("REDIS_URL not set, sessions are held in process memory")

    scheduler = ClinikoClient(
        settings.cliniko_base_url,
        settings.cliniko_api_key,
        business_id=settings.cliniko_business_id,
        practitioner_id=settings.cliniko_practitioner_id,
        tz=settings.timezone,
    )
    coordinator = SlotCoordinator(
        scheduler,
        standard_type_id=settings.standard_appt_type_id,
        new_patient_type_id=settings.new_patient_appt_type_id,
        tz=settings.timezone,
    )
    messenger = TwilioMessenger(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        settings.twilio_phone_number,
        clinic_name=settings.clinic_name,
    )
    dashboard = DashboardClient(
        calls_url=settings.dashboard_calls_url,
        alerts_url=settings.dashboard_alerts_url,
        webhook_secret=settings.dashboard_webhook_secret,
    )
    return TurnProcessor(
        store,
        StateMachine(clinic_name=settings.clinic_name, tz=settings.timezone),
        scheduler=scheduler,
        coordinator=coordinator,
        classifier=IntentClassifier(settings.openai_api_key),
        messenger=messenger,
        dashboard=dashboard,
        booking_link=settings.booking_link_url,
        tz=settings.timezone,
    )


def get_settings() -> Settings:
    if not hasattr(app.state, "settings"):
        app.state.settings = Settings.from_env()
    return app.state.settings


def get_processor() -> TurnProcessor:
    if not hasattr(app.state, "processor"):
        app.state.processor = build_processor(get_settings())
    return app.state.processor


def _xml(body: str) -> Response:
    return Response(content=body, media_type="application/xml")


@app.get("/health")
async def health():
    return PlainTextResponse("ok")


@app.post("/voice/incoming")
async def voice_incoming(
    CallSid: str = Form(...),
    From: str = Form(""),
    processor: TurnProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
):
    """First webhook of a call: greet and start listening."""
    try:
        response = await processor.start_call(CallSid, From)
    except Exception:
        logger.exception("Call start failed for %s", CallSid)
        return _xml(twiml.hangup(prompts.say("system_error")))
    return _xml(twiml.render(response, settings.public_base_url))


@app.post("/voice/turn")
async def voice_turn(
    request: Request,
    CallSid: str = Form(...),
    From: str = Form(""),
    SpeechResult: str = Form(""),
    Digits: str = Form(""),
    processor: TurnProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
):
    """One caller turn. ``state`` and ``seq`` come back on the Gather action URL."""
    state_tag = request.query_params.get("state", "")
    seq = request.query_params.get("seq", "")
    try:
        response = await processor.handle_turn(
            CallSid,
            phone=From,
            speech=SpeechResult,
            digits=Digits,
            state_tag=state_tag,
            seq=seq,
        )
    except Exception:
        logger.exception("Turn failed for %s (state=%s seq=%s)", CallSid, state_tag, seq)
        return _xml(twiml.hangup(prompts.say("system_error")))
    return _xml(twiml.render(response, settings.public_base_url))


@app.post("/voice/status")
async def voice_status(
    CallSid: str = Form(...),
    CallStatus: str = Form(""),
    processor: TurnProcessor = Depends(get_processor),
):
    """Call status callback. Post-call work runs once the call is final."""
    if CallStatus in FINAL_STATUSES:
        try:
            await processor.finish_call(CallSid, CallStatus)
        except Exception:
            logger.exception("Post-call processing failed for %s", CallSid)
    else:
        logger.info("Call %s status %s", CallSid, CallStatus)
    return PlainTextResponse("ok")


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("clinicline.bot:app", host="0.0.0.0", port=port)
