"""Push notifications: dispatcher interface, Expo client, and message builders.

The core never retries a push. A dispatcher reports success as a bool and
the caller logs failures; the reminder ring proceeds to its timeout either way.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import aiohttp

from eldercare import users
from eldercare.config import EXPO_PUSH_URL

if TYPE_CHECKING:
    from eldercare.scheduling.reminders import Reminder

log = logging.getLogger(__name__)

DEFAULT_BODY = "Time for your reminder!"
ALARM_SOUND = "reminder.aac"

_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")


class Dispatcher(Protocol):
    async def send(
        self,
        address: str,
        title: str,
        body: str,
        metadata: dict[str, Any],
        *,
        sound: str = "default",
    ) -> bool: ...


def is_push_token(address: str) -> bool:
    return bool(_TOKEN_RE.match(address))


class ExpoDispatcher:
    """Single-message sender for the Expo push API."""

    def __init__(self, url: str = EXPO_PUSH_URL, *, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def send(
        self,
        address: str,
        title: str,
        body: str,
        metadata: dict[str, Any],
        *,
        sound: str = "default",
    ) -> bool:
        if not is_push_token(address):
            log.error("Invalid Expo push token: %s", address)
            return False

        message = {
            "to": address,
            "sound": sound,
            "title": title,
            "body": body,
            "data": metadata,
            "priority": "high",
            "channelId": "reminders",
        }
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        try:
            async with self._session.post(
                self._url, json=[message], headers={"Accept": "application/json"}
            ) as resp:
                if resp.status >= 400:
                    log.error("Push API returned HTTP %d", resp.status)
                    return False
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("Error sending push notification: %s", e)
            return False

        for ticket in payload.get("data", []):
            if ticket.get("status") == "error":
                log.error("Push notification error: %s", ticket.get("message"))
                if ticket.get("details", {}).get("error") == "DeviceNotRegistered":
                    log.info("Device not registered, token should be removed")
                return False
        return True

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


# --- Messages ---


@dataclass(frozen=True, slots=True)
class PushMessage:
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    sound: str = "default"


def ring_message(reminder: Reminder) -> PushMessage:
    return PushMessage(
        title=reminder.title or "Reminder",
        body=reminder.message or DEFAULT_BODY,
        data={"type": "reminder", "reminderId": reminder.id},
        sound=ALARM_SOUND,
    )


def escalation_message(
    reminder: Reminder, parent_name: str, *, dismissed: bool = False
) -> PushMessage:
    if dismissed:
        return PushMessage(
            title="⚠️ Reminder Dismissed",
            body=(
                f'{parent_name} dismissed "{reminder.title}". '
                "You may want to check on them."
            ),
            data={"type": "reminder_dismissed", "reminderId": reminder.id},
        )
    return PushMessage(
        title="🚨 Check on Your Parent",
        body=(
            f'{parent_name} has not done "{reminder.title}". '
            "Better to call and check on them."
        ),
        data={"type": "reminder_escalation", "reminderId": reminder.id},
    )


def completion_message(reminder: Reminder, parent_name: str) -> PushMessage:
    return PushMessage(
        title="✅ Task Completed",
        body=f'Great news! {parent_name} completed "{reminder.title}".',
        data={"type": "reminder_done", "reminderId": reminder.id},
    )


class Notifier:
    """Resolves device addresses for a reminder's parent and caregiver."""

    def __init__(self, dispatcher: Dispatcher) -> None:
        self.dispatcher = dispatcher

    async def _send(self, address: str, msg: PushMessage) -> bool:
        return await self.dispatcher.send(
            address, msg.title, msg.body, msg.data, sound=msg.sound
        )

    async def ring(self, reminder: Reminder) -> bool:
        """Push the reminder itself to the parent's device."""
        parent = users.get_user(reminder.for_user)
        if parent is None:
            log.error("Parent user not found: %s", reminder.for_user)
            return False
        if not parent.push_token:
            log.warning("Parent has no push token: %s", reminder.for_user)
            return False
        return await self._send(parent.push_token, ring_message(reminder))

    async def escalate(self, reminder: Reminder, *, dismissed: bool = False) -> bool:
        return await self._notify_caregiver(
            reminder,
            lambda parent: escalation_message(
                reminder, parent.display_name, dismissed=dismissed
            ),
        )

    async def completed(self, reminder: Reminder) -> bool:
        return await self._notify_caregiver(
            reminder, lambda parent: completion_message(reminder, parent.display_name)
        )

    async def _notify_caregiver(self, reminder: Reminder, build) -> bool:
        """No linked caregiver or no device is a silent no-op."""
        try:
            pair = users.find_caregiver(reminder.for_user)
            if pair is None:
                return False
            parent, child = pair
            if not child.push_token:
                return False
            ok = await self._send(child.push_token, build(parent))
        except Exception:
            log.exception("Error notifying caregiver for reminder %s", reminder.id)
            return False
        if ok:
            log.info("Caregiver %s notified about reminder %s", child.id, reminder.id)
        else:
            log.error("Caregiver notification failed for reminder %s", reminder.id)
        return ok
