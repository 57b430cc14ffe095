import json
from channels.generic.websocket import AsyncWebsocketConsumer


def status_group(subject_id) -> str:
    return f"registration.{subject_id}"


class RegistrationStatusConsumer(AsyncWebsocketConsumer):
    """Pushes registration status changes to the connected subject."""

    async def connect(self):
        user = self.scope.get("user")
        if user is None or not user.is_authenticated:
            await self.close(code=4401)
            return
        self.group = status_group(user.id)
        await self.channel_layer.group_add(self.group, self.channel_name)
        await self.accept()
        await self.send(json.dumps({"type": "welcome", "subjectId": user.id}))

    async def disconnect(self, close_code):
        group = getattr(self, "group", None)
        if group:
            await self.channel_layer.group_discard(group, self.channel_name)

    async def registration_status(self, event):
        # event: {"type": "registration.status", "payload": {...}}
        await self.send(json.dumps({"type": "registration.status", **event["payload"]}))
