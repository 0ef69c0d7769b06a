from fastapi import Header, HTTPException
from jose import JWTError, jwt

from qr_checkout.config import JWT_SECRET


def verify_staff_token(authorization: str = Header(...)) -> dict:
    """Bearer token check for staff-only actions; returns the token claims."""
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    if scheme.lower() != "bearer" or not JWT_SECRET:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
