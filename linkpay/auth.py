from fastapi import Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

from linkpay.config import jwt_secret


def verify_token(authorization: str = Header(...)):
    """Operator endpoints only: bearer JWT signed with JWT_SECRET."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported auth scheme")
        return jwt.decode(token, jwt_secret(), algorithms=["HS256"])
    except (ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
