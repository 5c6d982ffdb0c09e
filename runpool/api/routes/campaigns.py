from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from runpool.api.deps import get_db, get_dispatcher, require_cron
from runpool.schemas.campaign import (
    CampaignRunRequest,
    CampaignRunResponse,
    CampaignStatsResponse,
    DispatchReportPublic,
)
from runpool.services import campaigns
from runpool.services.campaigns import CampaignDispatcher

router = APIRouter(prefix="/campaigns", tags=["campaigns"], dependencies=[Depends(require_cron)])

STATS_DAYS = 7


@router.post("/run", response_model=CampaignRunResponse)
def run_campaign(
    payload: CampaignRunRequest,
    db: Session = Depends(get_db),
    dispatcher: CampaignDispatcher = Depends(get_dispatcher),
):
    if payload.campaign_type == "all":
        reports = dispatcher.run_all(db)
    else:
        reports = [dispatcher.run(db, payload.campaign_type, payload.period_id)]

    return CampaignRunResponse(reports=[DispatchReportPublic(**r.__dict__) for r in reports])


@router.get("/stats", response_model=CampaignStatsResponse)
def campaign_stats(db: Session = Depends(get_db)):
    return CampaignStatsResponse(days=STATS_DAYS, sends=campaigns.stats(db, days=STATS_DAYS))
