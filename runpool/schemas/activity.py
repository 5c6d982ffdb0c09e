from datetime import date

from pydantic import BaseModel, ConfigDict, Field


class ActivityCreate(BaseModel):
    miles: float = Field(gt=0, le=200)
    logged_on: date | None = None  # hoy si falta


class ActivityPublic(BaseModel):
    id: int
    user_id: int
    group_id: int
    miles: float
    logged_on: date

    model_config = ConfigDict(from_attributes=True)


class LeaderboardRow(BaseModel):
    rank: int
    user_id: int
    name: str
    miles: float
    days_active: int


class LeaderboardResponse(BaseModel):
    group_id: int
    period_id: str
    entries: list[LeaderboardRow]
    my_streak: int | None = None
