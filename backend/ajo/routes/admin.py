"""
Admin Routes: Operator views over membership counts and webhook deliveries.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from ajo.database import get_db
from ajo.errors import GroupNotFoundError
from ajo.models.group import Group, GroupMembership, MembershipStatus
from ajo.models.webhook import WebhookEvent, WebhookState
from ajo.schemas.schemas import ConsistencyReport, WebhookEventEntry
from ajo.services.token_guard import Principal, require_admin

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/groups/{group_id}/consistency", response_model=ConsistencyReport)
def group_consistency(
    group_id: str,
    _admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Compare the stored member count with the number of active memberships."""
    group = db.query(Group).filter(Group.id == group_id).first()
    if not group:
        raise GroupNotFoundError("Group not found")

    active = db.query(func.count(GroupMembership.id)).filter(
        GroupMembership.group_id == group.id,
        GroupMembership.status == MembershipStatus.ACTIVE.value,
    ).scalar() or 0

    return ConsistencyReport(
        group_id=group.id,
        current_member_count=group.current_member_count,
        active_members=active,
        capacity=group.capacity,
        consistent=group.current_member_count == active,
    )


@router.get("/webhooks", response_model=List[WebhookEventEntry])
def list_webhook_events(
    state: Optional[WebhookState] = None,
    limit: int = Query(50, ge=1, le=500),
    _admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Most recent webhook deliveries, optionally filtered by state."""
    query = db.query(WebhookEvent)
    if state is not None:
        query = query.filter(WebhookEvent.state == state.value)
    return query.order_by(WebhookEvent.id.desc()).limit(limit).all()
