from pydantic import BaseModel, EmailStr
from typing import Optional


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class BrowserSubscription(BaseModel):
    endpoint: str
    keys: PushKeys


class PushSubscribeRequest(BaseModel):
    recipient_email: EmailStr
    subscription: BrowserSubscription


class PushDeactivateRequest(BaseModel):
    recipient_email: EmailStr
    # None deactivates every subscription of the recipient (logout everywhere)
    endpoint: Optional[str] = None


class PushSubscribeResponse(BaseModel):
    endpoint: str
    active: bool
    reassigned: bool = False


class PublicKeyResponse(BaseModel):
    public_key: Optional[str] = None
    configured: bool
