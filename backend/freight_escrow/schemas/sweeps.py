from pydantic import BaseModel


class AutoReleaseResponse(BaseModel):
    eligible: int
    released: int
    skipped: int
    failed: int
    partial_failure: bool


class ExpireBidsResponse(BaseModel):
    expired: int
