from typing import Any

from pydantic import BaseModel


class CampaignRunRequest(BaseModel):
    campaign_type: str = "all"
    period_id: str | None = None


class DispatchReportPublic(BaseModel):
    campaign_type: str
    period_id: str
    sent: int
    skipped_already_sent: int
    failed: int
    failures: list[dict[str, Any]] = []


class CampaignRunResponse(BaseModel):
    reports: list[DispatchReportPublic]


class CampaignStatsResponse(BaseModel):
    days: int
    sends: dict[str, int]
