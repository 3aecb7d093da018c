from typing import Optional

from pydantic import BaseModel


class CarrierConnectStatusRead(BaseModel):
    user_id: str
    stripe_connect_account_id: Optional[str] = None
    stripe_connect_enabled: bool
    stripe_connect_charges_enabled: bool
    stripe_connect_payouts_enabled: bool
    stripe_connect_details_submitted: bool

    class Config:
        from_attributes = True


class ConnectAccountCreate(BaseModel):
    email: Optional[str] = None


class ConnectAccountRead(BaseModel):
    account_id: str
    exists: bool


class ConnectOnboardingLinkRead(BaseModel):
    url: str
