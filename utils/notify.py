from app import database
from app.config import ADMIN_ID

ALL_ADMINS = "ALL_ADMINS"


async def notify(
    user_id: str,
    role: str,
    title: str,
    message: str,
    batch_id: str | None = None,
    category: str = "system",
    metadata: dict | None = None,
):
    recipients = []

    # expand ALL_ADMINS to every registered reviewer
    if user_id == ALL_ADMINS:
        async for u in database.users_col.find({"role": "Admin"}):
            recipients.append(str(u.get("id") or u["_id"]))
        if not recipients:
            recipients.append(ADMIN_ID)
    else:
        recipients.append(user_id)

    notifications = []
    now = database.utcnow()

    for uid in recipients:
        notifications.append({
            "user_id": uid,
            "role": role,
            "title": title,
            "message": message,
            "batch_id": batch_id,
            "category": category,
            "metadata": metadata or {},
            "read": False,
            "created_at": now,
        })

    if notifications:
        await database.notification_collection.insert_many(notifications)
    return len(notifications)
