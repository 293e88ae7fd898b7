from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class StreakRead(BaseModel):
    current_streak: int = 0
    longest_streak: int = 0
    last_login: Optional[datetime] = None
    changed: bool = False
    message: str
