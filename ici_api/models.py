from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

KEY_STATUS_ACTIVE = "active"
KEY_STATUS_INACTIVE = "inactive"


class KeyRecord(BaseModel):
    id: Optional[int] = None
    key_hash: str
    plan: str = "pro"
    status: str = Field(default=KEY_STATUS_ACTIVE, pattern="^(active|inactive)$")
    email: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == KEY_STATUS_ACTIVE


class AlertSubscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    telegram_chat_id: Optional[Union[str, int]] = Field(default=None, alias="telegramChatId")


class CheckoutRequest(BaseModel):
    email: Optional[str] = None


class KeyVerifyResponse(BaseModel):
    status: str
    plan: str
    email: Optional[str] = None
