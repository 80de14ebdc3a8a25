class MonitorStreamError(Exception):
    """Base class for session engine errors."""


class AlreadyActive(MonitorStreamError):
    def __init__(self, camera_id: int):
        super().__init__(f"Camera {camera_id} already has an active session")
        self.camera_id = camera_id


class NotFound(MonitorStreamError):
    def __init__(self, what: str, key: object):
        super().__init__(f"{what} {key} not found")
        self.what = what
        self.key = key


class MalformedMessage(MonitorStreamError):
    """Inbound payload could not be decoded into a known message."""


class DeliverySkipped(MonitorStreamError):
    """A send was skipped because the connection is closing or closed."""
