from typing import Literal

from pydantic import BaseModel, Field

from rekber.schemas.transaction import TransactionResponse


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    evidence_image_url: str | None = Field(default=None, max_length=500)


class DisputeOpenedResponse(BaseModel):
    transaction: TransactionResponse
    room_id: str
    room_type: str


class DisputeResolveRequest(BaseModel):
    decision: Literal["refund", "release"]
    note: str | None = Field(default=None, max_length=2000)


class DisputeResolvedResponse(BaseModel):
    transaction: TransactionResponse
    decision: str
