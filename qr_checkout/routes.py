from fastapi import APIRouter, Depends

from qr_checkout import qr_payments
from qr_checkout.auth import verify_staff_token
from qr_checkout.database import SessionLocal
from qr_checkout.schemas import FailedPaymentRequest, QRPaymentData

router = APIRouter(prefix="/qr")


@router.post("/payments")
def create_qr_payment(request: QRPaymentData):
    db = SessionLocal()
    try:
        return qr_payments.create_qr_payment_intent(db, request)
    finally:
        db.close()


@router.post("/cash-orders")
def create_cash_order(request: QRPaymentData):
    db = SessionLocal()
    try:
        return qr_payments.create_cash_order(db, request)
    finally:
        db.close()


@router.post("/orders/{order_id}/complete-cash")
def complete_cash_order(order_id: str, staff=Depends(verify_staff_token)):
    db = SessionLocal()
    try:
        return qr_payments.complete_cash_order(db, order_id)
    finally:
        db.close()


@router.post("/orders/{order_id}/confirm")
def confirm_payment(order_id: str):
    db = SessionLocal()
    try:
        return qr_payments.confirm_qr_payment(db, order_id)
    finally:
        db.close()


@router.get("/orders/{order_id}")
def order_details(order_id: str):
    db = SessionLocal()
    try:
        return qr_payments.get_qr_order_details(db, order_id)
    finally:
        db.close()


@router.post("/orders/{order_id}/failed")
def failed_payment(order_id: str, request: FailedPaymentRequest):
    db = SessionLocal()
    try:
        return qr_payments.handle_failed_payment(db, order_id, request.message)
    finally:
        db.close()


@router.get("/restaurants/{restaurant_id}/payment-methods")
def payment_methods(restaurant_id: str):
    db = SessionLocal()
    try:
        return qr_payments.validate_payment_methods(db, restaurant_id)
    finally:
        db.close()
