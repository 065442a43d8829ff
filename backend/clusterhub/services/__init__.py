"""Services package."""

from clusterhub.services.access_control import ChatAccessResolver
from clusterhub.services.membership import MembershipService
from clusterhub.services.messaging import MessagingService
from clusterhub.services.notification import NotificationService
from clusterhub.services.store import EntityStore

__all__ = [
    "ChatAccessResolver",
    "EntityStore",
    "MembershipService",
    "MessagingService",
    "NotificationService",
]
