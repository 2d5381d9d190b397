from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from utils.security import decode_token
from utils.rate_limit import get_rate_limiter

bearer_scheme = HTTPBearer(auto_error=False)

def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)):

    if credentials is None or not credentials.scheme.lower() == "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = credentials.credentials
    payload = decode_token(token)
    if not payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return payload

def role_required(role: str):
    def wrapper(payload=Depends(get_current_user)):
        if payload.get("role") != role:
            raise HTTPException(status_code=403, detail="Not enough privileges")
        return payload
    return wrapper

def require_clinic_access(payload: dict, clinic_id: str):
    """Admins may act on any clinic; everyone else only on their own."""
    if payload.get("role") == "admin":
        return
    if payload.get("clinicId") != clinic_id:
        raise HTTPException(status_code=403, detail="Access denied to this clinic")

def rate_limited_user(payload=Depends(get_current_user), limiter=Depends(get_rate_limiter)):
    if limiter is not None:
        limiter.hit(str(payload.get("sub") or payload.get("uid")))
    return payload
