"""Groups router: create, update and delete groups, manage their members."""

from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import get_current_user
from utils.balances import get_groups_with_balances, group_has_outstanding_balances
from utils.validation import (
    get_group_or_404,
    get_user_by_email,
    verify_group_membership,
    verify_group_ownership,
)


router = APIRouter(prefix="/groups", tags=["groups"])


@router.post("", response_model=schemas.Group)
def create_group(
    group: schemas.GroupCreate,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    db_group = models.Group(
        name=group.name,
        created_by_id=current_user.id,
        default_currency=group.default_currency
    )
    db.add(db_group)
    db.flush()

    # Add creator as member
    db.add(models.GroupMember(group_id=db_group.id, user_id=current_user.id))
    db.commit()
    db.refresh(db_group)

    return db_group


@router.get("", response_model=list[schemas.GroupWithBalances])
def read_groups(
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return get_groups_with_balances(db, current_user.id)


@router.get("/{group_id}", response_model=schemas.GroupWithMembers)
def get_group(
    group_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    group = get_group_or_404(db, group_id)
    verify_group_membership(db, group_id, current_user.id)

    members_query = db.query(models.GroupMember, models.User).join(
        models.User, models.GroupMember.user_id == models.User.id
    ).filter(models.GroupMember.group_id == group_id).order_by(models.GroupMember.id).all()

    return schemas.GroupWithMembers(
        id=group.id,
        name=group.name,
        default_currency=group.default_currency,
        created_by_id=group.created_by_id,
        members=[
            schemas.GroupMember(
                id=gm.id,
                user_id=user.id,
                full_name=user.full_name or user.email,
                email=user.email
            )
            for gm, user in members_query
        ]
    )


@router.put("/{group_id}", response_model=schemas.Group)
def update_group(
    group_id: int,
    group_update: schemas.GroupUpdate,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    group = verify_group_ownership(db, group_id, current_user.id)
    # Only the default for new expenses; existing balances keep their currency
    group.name = group_update.name
    group.default_currency = group_update.default_currency
    db.commit()
    db.refresh(group)
    return group


@router.delete("/{group_id}")
def delete_group(
    group_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    verify_group_ownership(db, group_id, current_user.id)

    if group_has_outstanding_balances(db, group_id):
        raise HTTPException(status_code=400, detail="Group still has outstanding balances")

    live_expense = db.query(models.Expense.id).filter(
        models.Expense.group_id == group_id,
        models.Expense.deleted_at.is_(None)
    ).first()
    if live_expense:
        raise HTTPException(status_code=400, detail="Delete the group's expenses before deleting the group")

    db.query(models.GroupMember).filter(models.GroupMember.group_id == group_id).delete()
    db.query(models.Group).filter(models.Group.id == group_id).delete()
    db.commit()

    return {"message": "Group deleted successfully"}


@router.post("/{group_id}/members", response_model=schemas.GroupMember)
def add_group_member(
    group_id: int,
    member_add: schemas.GroupMemberAdd,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    get_group_or_404(db, group_id)
    verify_group_membership(db, group_id, current_user.id)

    user = get_user_by_email(db, member_add.email)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    existing = db.query(models.GroupMember).filter(
        models.GroupMember.group_id == group_id,
        models.GroupMember.user_id == user.id
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="User is already a member of this group")

    new_member = models.GroupMember(group_id=group_id, user_id=user.id)
    db.add(new_member)
    db.commit()
    db.refresh(new_member)

    return schemas.GroupMember(
        id=new_member.id,
        user_id=user.id,
        full_name=user.full_name or user.email,
        email=user.email
    )


@router.delete("/{group_id}/members/{user_id}")
def remove_group_member(
    group_id: int,
    user_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    group = get_group_or_404(db, group_id)
    verify_group_membership(db, group_id, current_user.id)

    # Owner can remove anyone except themselves
    # Non-owners can only remove themselves
    if current_user.id != group.created_by_id and current_user.id != user_id:
        raise HTTPException(status_code=403, detail="You can only remove yourself from the group")

    if user_id == group.created_by_id:
        raise HTTPException(status_code=400, detail="Group owner cannot be removed. Delete the group instead.")

    member = db.query(models.GroupMember).filter(
        models.GroupMember.group_id == group_id,
        models.GroupMember.user_id == user_id
    ).first()
    if not member:
        raise HTTPException(status_code=404, detail="Member not found in this group")

    if group_has_outstanding_balances(db, group_id, user_id):
        raise HTTPException(status_code=400, detail="Member still has outstanding balances in this group")

    db.delete(member)
    db.commit()

    return {"message": "Member removed successfully"}
