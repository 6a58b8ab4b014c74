from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserType(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

ADMIN_USER_TYPES = (UserType.ADMIN.value, UserType.SUPER_ADMIN.value)

class AuditAction(str, Enum):
    # Plans
    PLAN_CREATED = "PLAN_CREATED"
    PLAN_UPDATED = "PLAN_UPDATED"
    PLAN_DEACTIVATED = "PLAN_DEACTIVATED"

    # Subscriptions
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"
    SUBSCRIPTION_LAPSED = "SUBSCRIPTION_LAPSED"

    # Credits
    ADDON_CREDITS_GRANTED = "ADDON_CREDITS_GRANTED"

    # Billing
    CHECKOUT_SESSION_CREATED = "CHECKOUT_SESSION_CREATED"
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"

# ============================================================================
# MODELS
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
