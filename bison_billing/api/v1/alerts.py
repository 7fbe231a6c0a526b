"""/v1/alerts - Alert history and channel testing"""

from fastapi import APIRouter, Depends, Query

from bison_billing.api.dependencies import get_engine, http_error
from bison_billing.api.v1.schemas import AlertHistoryResponse, AlertSchema, ChannelTestResponse, NotifyChannelSchema
from bison_billing.domain.exceptions import DomainException, NotificationError
from bison_billing.domain.models import NotifyChannel
from bison_billing.engine.container import Engine

router = APIRouter()


@router.get("/alerts/history", response_model=AlertHistoryResponse)
def get_alert_history(
    limit: int = Query(50, ge=1, le=1000),
    engine: Engine = Depends(get_engine),
):
    """Recorded alerts, newest first"""
    try:
        alerts = engine.alert_repo.history(limit=limit)
    except DomainException as e:
        raise http_error(e) from e

    return AlertHistoryResponse(
        alerts=[
            AlertSchema(
                id=str(a.id),
                type=a.type,
                severity=a.severity,
                target=a.target,
                message=a.message,
                timestamp=a.timestamp,
                sent=a.sent,
                sent_at=a.sent_at,
                channels=a.channels,
                errors=a.errors,
            )
            for a in alerts
        ]
    )


@router.post("/alerts/channels/test", response_model=ChannelTestResponse)
async def test_channel(request_body: NotifyChannelSchema, engine: Engine = Depends(get_engine)):
    """Send a test message through a channel before saving it"""
    channel = NotifyChannel(
        id=request_body.id,
        type=request_body.type,
        name=request_body.name,
        config=dict(request_body.config),
        enabled=request_body.enabled,
    )
    try:
        await engine.dispatcher.test_channel(channel)
    except NotificationError as e:
        return ChannelTestResponse(success=False, error=str(e))
    return ChannelTestResponse(success=True)
