import logging

import stripe
from fastapi import FastAPI, Request, Header, HTTPException
from fastapi.responses import JSONResponse

from qr_checkout import stripe_service
from qr_checkout.config import LOG_LEVEL
from qr_checkout.routes import router
from qr_checkout.database import Base, engine, SessionLocal
from qr_checkout.webhooks import handle_event

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="QR Checkout Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = stripe_service.construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    db = SessionLocal()
    try:
        handle_event(db, event)
    except Exception:
        logger.exception("Error processing webhook %s (%s)", event.get("id"), event.get("type"))
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})
    finally:
        db.close()

    return {"ok": True}
