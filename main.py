import json
import logging

import stripe
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, status

import db
from app.errors import BookingError, DataIntegrityError, InvalidTransition, PreconditionFailed, StoreError
from app.services.wiring import Services, build_services
from app.types.booking_contract import AppointmentCreate, AppointmentUpdate, SubscriptionRenew
from config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
_LOGGER = logging.getLogger("main")

if settings.STRIPE_SECRET_KEY:
    stripe.api_key = settings.STRIPE_SECRET_KEY

app = FastAPI()

_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(db.get_session_maker())
    return _services


@app.on_event("startup")
async def startup_event():
    settings.validate()
    # Tables are managed via Alembic migrations

@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, DataIntegrityError):
        return HTTPException(status.HTTP_404_NOT_FOUND, str(exc))
    if isinstance(exc, (InvalidTransition, PreconditionFailed)):
        return HTTPException(status.HTTP_409_CONFLICT, str(exc))
    if isinstance(exc, StoreError):
        return HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "DB error")
    return HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))

# --------------------------------------------
# Health
# --------------------------------------------
@app.get("/health")
async def health():
    return {"status": "ok", "environment": settings.ENVIRONMENT}

# --------------------------------------------
# Appointments (side effects run as background tasks)
# --------------------------------------------
@app.post("/v1/appointments", status_code=status.HTTP_201_CREATED)
async def create_appointment(body: AppointmentCreate, background: BackgroundTasks,
                             services: Services = Depends(get_services)):
    try:
        return await services.appointments.book(body, defer=background.add_task)
    except BookingError as exc:
        raise _to_http(exc)


@app.patch("/v1/appointments/{appointment_id}")
async def update_appointment(appointment_id: str, body: AppointmentUpdate, background: BackgroundTasks,
                             services: Services = Depends(get_services)):
    try:
        return await services.appointments.update(appointment_id, body, defer=background.add_task)
    except BookingError as exc:
        raise _to_http(exc)


@app.delete("/v1/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_appointment(appointment_id: str, background: BackgroundTasks,
                             services: Services = Depends(get_services)):
    try:
        await services.appointments.delete(appointment_id, defer=background.add_task)
    except BookingError as exc:
        raise _to_http(exc)

# --------------------------------------------
# Subscriptions
# --------------------------------------------
@app.post("/v1/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(subscription_id: str, services: Services = Depends(get_services)):
    try:
        return await services.subscriptions.cancel(subscription_id)
    except BookingError as exc:
        raise _to_http(exc)


@app.post("/v1/subscriptions/{subscription_id}/renew")
async def renew_subscription(subscription_id: str, body: SubscriptionRenew,
                             services: Services = Depends(get_services)):
    try:
        return await services.subscriptions.renew(subscription_id, body)
    except BookingError as exc:
        raise _to_http(exc)

# --------------------------------------------
# Webhooks
# --------------------------------------------
@app.post("/v1/webhooks/stripe")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    raw_body = await request.body()
    sig = request.headers.get("stripe-signature")
    try:
        if settings.STRIPE_WEBHOOK_SECRET:
            event = stripe.Webhook.construct_event(raw_body, sig, settings.STRIPE_WEBHOOK_SECRET)
        else:  # dev mode: skip signature verification
            event = json.loads(raw_body)
    except (ValueError, stripe.SignatureVerificationError):
        raise HTTPException(400, "Bad signature")

    _LOGGER.info("Stripe event %s (%s)", event.get("id"), event.get("type"))
    try:
        result = await services.subscriptions.handle_stripe_event(event)
    except StoreError:
        # 5xx makes Stripe redeliver the event later
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "DB error")
    return {"received": True, "result": result}
