"""
Group Routes: Savings group setup and join requests.
Membership only becomes active through a verified payment.
"""
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ajo.database import get_db
from ajo.errors import (
    ConflictError, GroupNotFoundError, InvalidRequestError, NotFoundError, PermissionDeniedError,
)
from ajo.models.group import Group, GroupMembership, GroupStatus, MembershipStatus
from ajo.schemas.schemas import (
    GroupCreateRequest, GroupResponse, JoinGroupRequest, JoinRequestResponse, MemberEntry,
)
from ajo.services.token_guard import Principal, require_user
from ajo.utils.validators import validate_slot

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/groups", tags=["Groups"])


def _load_group(db: Session, group_id: str) -> Group:
    group = db.query(Group).filter(Group.id == group_id).first()
    if not group:
        raise GroupNotFoundError("Group not found")
    return group


def _group_response(db: Session, group: Group) -> GroupResponse:
    members = (
        db.query(GroupMembership)
        .filter(GroupMembership.group_id == group.id)
        .order_by(GroupMembership.rotation_position.asc(), GroupMembership.created_at.asc())
        .all()
    )
    response = GroupResponse.model_validate(group)
    response.members = [MemberEntry.model_validate(m) for m in members]
    return response


@router.post("", response_model=GroupResponse, status_code=201)
def create_group(
    payload: GroupCreateRequest,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Create a forming group. The creator joins by paying the creation payment."""
    group = Group(
        name=payload.name,
        description=payload.description,
        created_by=principal.user_id,
        contribution_amount=payload.contribution_amount,
        security_deposit_amount=payload.security_deposit_amount,
        frequency=payload.frequency,
        capacity=payload.capacity,
        current_member_count=0,
        status=GroupStatus.FORMING.value,
    )
    db.add(group)
    db.commit()
    db.refresh(group)

    logger.info("group.created", group_id=group.id, created_by=principal.user_id, capacity=group.capacity)
    return _group_response(db, group)


@router.get("/{group_id}", response_model=GroupResponse)
def get_group(
    group_id: str,
    _principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Group details with its roster."""
    return _group_response(db, _load_group(db, group_id))


@router.post("/{group_id}/join", response_model=JoinRequestResponse, status_code=201)
def request_to_join(
    group_id: str,
    payload: Optional[JoinGroupRequest] = None,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Register a pending join request; it turns active once the join payment is verified."""
    group = _load_group(db, group_id)
    if group.created_by == principal.user_id:
        raise ConflictError("You created this group and cannot request to join it", code="creator_cannot_join")
    if group.status != GroupStatus.FORMING or group.current_member_count >= group.capacity:
        raise ConflictError("This group is not accepting new members", code="group_full")

    preferred_slot = payload.preferred_slot if payload else None
    if not validate_slot(preferred_slot, group.capacity):
        raise InvalidRequestError(f"preferred_slot must be between 1 and {group.capacity}")

    existing = db.query(GroupMembership).filter(
        GroupMembership.group_id == group.id,
        GroupMembership.user_id == principal.user_id,
    ).first()
    if existing:
        raise ConflictError(f"You already have a {existing.status} membership in this group", code="already_requested")

    db.add(GroupMembership(
        group_id=group.id,
        user_id=principal.user_id,
        status=MembershipStatus.PENDING.value,
        preferred_slot=preferred_slot,
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("You already have a membership in this group", code="already_requested")

    logger.info("group.join_requested", group_id=group.id, user_id=principal.user_id, preferred_slot=preferred_slot)
    return JoinRequestResponse(
        group_id=group.id,
        user_id=principal.user_id,
        status=MembershipStatus.PENDING.value,
        preferred_slot=preferred_slot,
        message="Join request recorded. Complete the join payment to secure your slot.",
    )


@router.post("/{group_id}/members/{user_id}/reject", response_model=JoinRequestResponse)
def reject_join_request(
    group_id: str,
    user_id: str,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Creator declines a pending join request."""
    group = _load_group(db, group_id)
    if group.created_by != principal.user_id:
        raise PermissionDeniedError("Only the group creator can review join requests")

    updated = db.query(GroupMembership).filter(
        GroupMembership.group_id == group.id,
        GroupMembership.user_id == user_id,
        GroupMembership.status == MembershipStatus.PENDING.value,
    ).update({GroupMembership.status: MembershipStatus.REJECTED.value}, synchronize_session=False)
    if not updated:
        db.rollback()
        raise NotFoundError("No pending join request for this user")
    db.commit()

    logger.info("group.join_rejected", group_id=group.id, user_id=user_id, by=principal.user_id)
    return JoinRequestResponse(
        group_id=group.id,
        user_id=user_id,
        status=MembershipStatus.REJECTED.value,
        message="Join request rejected.",
    )
