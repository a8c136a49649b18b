from fastapi import APIRouter, Depends
from typing import List
from datetime import datetime

from app.models.notification import Notification, NotificationCreate
from app.models.user import User
from app.db.session import db
from app.core.errors import NotFoundError
from app.services.auth import get_current_user, get_admin_user
from app.services.notification import create_notification_helper

router = APIRouter()

@router.get("/notifications", response_model=List[Notification])
async def get_user_notifications(
    limit: int = 50,
    skip: int = 0,
    unread_only: bool = False,
    current_user: User = Depends(get_current_user)
):
    """Get notifications for the current user"""
    query = {"user_id": current_user.id}
    if unread_only:
        query["read"] = False

    notifications = await db.notifications.find(query).sort("created_at", -1).skip(skip).limit(limit).to_list(limit)
    return [Notification(**notif) for notif in notifications]

@router.get("/notifications/unread-count")
async def get_unread_notifications_count(current_user: User = Depends(get_current_user)):
    """Get count of unread notifications for the current user"""
    count = await db.notifications.count_documents({"user_id": current_user.id, "read": False})
    return {"unread_count": count}

@router.put("/notifications/{notification_id}/mark-read")
async def mark_notification_as_read(
    notification_id: str,
    current_user: User = Depends(get_current_user)
):
    """Mark a notification as read"""
    notification = await db.notifications.find_one({"id": notification_id, "user_id": current_user.id})
    if not notification:
        raise NotFoundError("Notification not found")

    if not notification.get("read", False):
        await db.notifications.update_one(
            {"id": notification_id, "user_id": current_user.id},
            {"$set": {"read": True, "read_at": datetime.utcnow()}}
        )

    return {"message": "Notification marked as read"}

@router.put("/notifications/mark-all-read")
async def mark_all_notifications_as_read(current_user: User = Depends(get_current_user)):
    """Mark all notifications as read for the current user"""
    result = await db.notifications.update_many(
        {"user_id": current_user.id, "read": False},
        {"$set": {"read": True, "read_at": datetime.utcnow()}}
    )

    return {"message": f"Marked {result.modified_count} notifications as read"}

@router.post("/notifications", response_model=Notification)
async def create_notification(
    notification_data: NotificationCreate,
    admin_user: User = Depends(get_admin_user)
):
    """Create a new notification (admin only)"""
    return await create_notification_helper(
        user_id=notification_data.user_id,
        title=notification_data.title,
        message=notification_data.message,
        notification_type=notification_data.type,
        priority=notification_data.priority,
        action_url=notification_data.action_url,
        metadata=notification_data.metadata,
    )
