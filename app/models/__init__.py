from app.models.access_key import (  # noqa: F401
    AccessKey,
    DataLimitResetStrategy,
    KeyStatus,
    KeyType,
    MeteredKeyMixin,
)
from app.models.dynamic_access_key import DynamicAccessKey  # noqa: F401
from app.models.notification_log import NotificationEvent, NotificationLog  # noqa: F401
from app.models.server import Server  # noqa: F401
from app.models.traffic_log import TrafficLog  # noqa: F401
from app.models.usage_snapshot import UsageSnapshot  # noqa: F401
