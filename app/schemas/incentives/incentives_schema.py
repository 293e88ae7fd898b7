from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class PointsBalance(BaseModel):
    user_id: int
    total_points: int = 0


class PointTransactionRead(BaseModel):
    id: int
    amount: int
    description: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AchievementRead(BaseModel):
    id: int
    slug: str
    title: str
    description: str
    icon: Optional[str] = None
    category: str
    criteria_type: str
    required_progress: int
    points: int

    class Config:
        from_attributes = True


class AchievementWithStatus(BaseModel):
    achievement: AchievementRead
    progress: int = 0
    progress_percentage: int = 0
    completed: bool = False
    completed_at: Optional[datetime] = None


class AchievementSummary(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    completion_percentage: int = 0
    total_points_earned: int = 0


class AwardResultRead(BaseModel):
    points_awarded: int = 0
    course_points_awarded: bool = False
    unlocked_achievements: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class AchievementCheckResponse(BaseModel):
    success: bool
    award: AwardResultRead
    error: Optional[str] = None


class RewardRead(BaseModel):
    id: int
    name: str
    description: str
    type: str
    icon: Optional[str] = None
    value: int

    class Config:
        from_attributes = True


class UserRewardRead(BaseModel):
    id: int
    reward: RewardRead
    earned_at: Optional[datetime] = None
    claimed: bool
    claimed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
