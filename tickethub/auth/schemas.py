from pydantic import BaseModel
from typing import Optional

class AdminActor(BaseModel):
    """Authenticated admin performing a decision"""
    id: str
    username: Optional[str] = None
    role: Optional[str] = None

class CustomerIdentity(BaseModel):
    """Telegram customer resolved from Mini App init data"""
    telegram_user_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
