from fastapi import HTTPException, Request

from services.context import ServiceContext

def get_context(request: Request) -> ServiceContext:
    ctx = getattr(request.app.state, "ctx", None)
    if not ctx:
        raise HTTPException(status_code=500, detail="Firestore not initialized")
    return ctx

def get_user_id(request: Request) -> str:
    """Caller identity, set by the gateway after the identity provider signs the user in"""
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user ID")
    return user_id
