"""
Notification dispatch.

Notifications are written to the `notifications` collection, which the
platform push service consumes and delivers. Every call here is best-effort:
a failure is logged and reported as None/False, it never propagates into the
booking operation that triggered it.
"""
import logging
from datetime import datetime, timedelta

from models import Notification, NotificationType, Ride

logger = logging.getLogger(__name__)

class Notifier:
    def __init__(self, notifications_ref, reminder_lead_minutes: int = 30):
        self.notifications_ref = notifications_ref
        self.reminder_lead_minutes = reminder_lead_minutes

    async def send(self, user_id: str, title: str, body: str, ride_id: str,
                   type: NotificationType = NotificationType.RIDE_STATUS,
                   data: dict | None = None) -> str | None:
        """Queue an immediate notification and return its id"""
        notification = Notification(
            user_id=user_id,
            title=title,
            body=body,
            type=type,
            data={"rideId": ride_id, **(data or {})},
        )
        return await self._write(notification)

    async def schedule(self, user_id: str, title: str, body: str, ride_id: str,
                       send_at: datetime,
                       type: NotificationType = NotificationType.RIDE_REMINDER) -> str | None:
        """Queue a notification for delivery at `send_at` and return its id"""
        notification = Notification(
            user_id=user_id,
            title=title,
            body=body,
            type=type,
            data={"rideId": ride_id},
            status="scheduled",
            scheduled_for=send_at,
        )
        return await self._write(notification)

    async def cancel(self, notification_id: str | None) -> bool:
        if not notification_id:
            return False
        try:
            self.notifications_ref.document(notification_id).update({"status": "cancelled"})
            logger.info(f"Cancelled notification {notification_id}")
            return True
        except Exception as exc:
            logger.warning(f"Could not cancel notification {notification_id}: {exc}")
            return False

    async def mark_read(self, user_id: str, ride_id: str, type: NotificationType,
                        data: dict | None = None) -> int:
        """Mark a user's unread notifications of `type` for a ride as read"""
        marked = 0
        try:
            query = self.notifications_ref.where("user_id", "==", user_id).where(
                "data.rideId", "==", ride_id).where("type", "==", type)
            for doc in query.stream():
                updates = {"read": True}
                if data:
                    updates["data"] = {"rideId": ride_id, **data}
                doc.reference.update(updates)
                marked += 1
        except Exception as exc:
            logger.warning(f"Could not mark notifications read for {user_id} on ride {ride_id}: {exc}")
        return marked

    async def _write(self, notification: Notification) -> str | None:
        try:
            self.notifications_ref.document(notification.id).set(notification.model_dump())
            return notification.id
        except Exception as exc:
            logger.error(f"Failed to queue notification for {notification.user_id}: {exc}")
            return None

    # Ride specific messages

    def _reminder_time(self, ride: Ride) -> datetime:
        return ride.departure_at - timedelta(minutes=self.reminder_lead_minutes)

    async def schedule_passenger_reminder(self, ride: Ride, user_id: str,
                                          driver_name: str | None = None) -> str | None:
        return await self.schedule(
            user_id,
            "Upcoming ride",
            f"Your ride from {ride.origin.address} to {ride.destination.address} "
            f"with {driver_name or 'your driver'} leaves at {ride.ride_datetime}",
            ride.id,
            self._reminder_time(ride),
        )

    async def schedule_driver_reminder(self, ride: Ride) -> str | None:
        return await self.schedule(
            ride.driver_id,
            "Upcoming ride",
            f"Your ride from {ride.origin.address} to {ride.destination.address} "
            f"leaves at {ride.ride_datetime}",
            ride.id,
            self._reminder_time(ride),
        )

    async def send_ride_request(self, ride: Ride, passenger_name: str, is_waitlist: bool) -> str | None:
        title = "New waitlist request" if is_waitlist else "New ride request"
        return await self.send(
            ride.driver_id,
            title,
            f"{passenger_name} asked to join your ride from {ride.origin.address} "
            f"to {ride.destination.address}",
            ride.id,
            type=NotificationType.RIDE_REQUEST,
            data={"passenger_name": passenger_name, "is_waitlist": is_waitlist},
        )

    async def send_check_out(self, ride: Ride, passenger_name: str) -> str | None:
        return await self.send(
            ride.driver_id,
            "Passenger checked out",
            f"{passenger_name} has checked out of your ride to {ride.destination.address}",
            ride.id,
            type=NotificationType.CHECK_OUT,
        )

    async def send_ride_status(self, user_ids, title: str, body: str, ride_id: str) -> list[str]:
        """Send the same status notification to several users"""
        sent = []
        for user_id in user_ids:
            notification_id = await self.send(user_id, title, body, ride_id)
            if notification_id:
                sent.append(notification_id)
        return sent
