# app/models/__init__.py
from app.models.user import User
from app.models.category import Category
from app.models.integration import Integration, IntegrationProvider
from app.models.inbox_item import InboxItem, InboxItemType, InboxPriority, InboxSource
from app.models.time_block import TimeBlock
from app.models.audit_log import AuditLog
