from pydantic import BaseModel, Field

from ugc_pipeline.ledger import TransactionType
from ugc_pipeline.prompts import VideoStyle


class ConfirmVideoRequest(BaseModel):
    user_id: str = Field(min_length=1)
    script: str = Field(min_length=1, max_length=5000)
    style: VideoStyle
    visual_summary: str | None = Field(default=None, max_length=5000)
    reference_image_url: str | None = None


class CreditBalanceResponse(BaseModel):
    user_id: str
    credit_balance: int


class AdminGrantRequest(BaseModel):
    user_id: str = Field(min_length=1)
    credits: int = Field(gt=0)
    type: TransactionType = TransactionType.BONUS
    note: str = "manual grant"
