from typing import Optional, Dict, Any
import logging

from app.models.notification import Notification
from app.db.session import db

logger = logging.getLogger(__name__)

async def create_notification_helper(
    user_id: str,
    title: str,
    message: str,
    notification_type: str = "system_alert",
    priority: str = "normal",
    action_url: Optional[str] = None,
    action_text: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
):
    """Helper function to create in-app notifications for settlement events"""
    notification_obj = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=notification_type,
        priority=priority,
        action_url=action_url,
        action_text=action_text,
        metadata=metadata or {},
    )
    await db.notifications.insert_one(notification_obj.model_dump())
    return notification_obj

async def notify_all_admins(
    title: str,
    message: str,
    priority: str = "normal",
    action_url: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
):
    """Send notification to all admin users"""
    admin_users = await db.users.find({"role": "admin"}).to_list(100)

    notifications_sent = 0
    for admin in admin_users:
        await create_notification_helper(
            user_id=admin["id"],
            title=title,
            message=message,
            priority=priority,
            action_url=action_url,
            metadata=metadata
        )
        notifications_sent += 1

    return notifications_sent
