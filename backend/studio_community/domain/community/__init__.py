"""Community threads, messages, read state and notification routing."""

from .class_threads import ClassThreadService
from .messages import MessageService
from .notifications import NotificationService
from .read_state import ReadTracker
from .routing import NotificationRouter
from .threads import ThreadService

__all__ = [
	"ClassThreadService",
	"MessageService",
	"NotificationRouter",
	"NotificationService",
	"ReadTracker",
	"ThreadService",
]
