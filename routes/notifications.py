from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException

from app import database
from app.database import notification_helper
from utils.jwt import Actor, current_actor

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("")
async def get_notifications(unread: bool = False, actor: Actor = Depends(current_actor)):
    query = {"user_id": actor.id}
    if unread:
        query["read"] = False
    notifications = []
    async for n in database.notification_collection.find(query).sort("created_at", -1):
        notifications.append(notification_helper(n))
    return notifications


@router.put("/{notification_id}/read")
async def mark_notification_read(notification_id: str, actor: Actor = Depends(current_actor)):
    try:
        oid = ObjectId(notification_id)
    except InvalidId:
        raise HTTPException(400, "Invalid notification id")

    result = await database.notification_collection.update_one(
        {"_id": oid, "user_id": actor.id},
        {"$set": {"read": True}},
    )
    if result.matched_count == 0:
        raise HTTPException(404, "Notification not found")
    return {"message": "Notification marked as read"}
