"""
Core data models for the follow-up orchestration core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class LeadState(str, Enum):
    NEW = "new"
    EXPLORING = "exploring"
    INTERESTED = "interested"
    QUALIFIED = "qualified"
    NEGOTIATING = "negotiating"
    BOOKED = "booked"
    CONVERTED = "converted"
    OPTED_OUT = "opted_out"
    DEAD = "dead"


# States in which a lead must not receive further follow-ups
CLOSED_LEAD_STATES = {LeadState.BOOKED, LeadState.CONVERTED, LeadState.OPTED_OUT, LeadState.DEAD}


class MessageSender(str, Enum):
    LEAD = "lead"
    AGENT = "agent"


class TaskStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"


TERMINAL_TASK_STATUSES = {TaskStatus.SENT, TaskStatus.DEAD}


class FollowUpType(str, Enum):
    URGENCY = "urgency"
    LEAD_STATE = "lead_state"
    BEHAVIORAL = "behavioral"
    EDUCATIONAL = "educational"
    RELATIONSHIP = "relationship"


class EngagementLevel(str, Enum):
    HOT = "hot"              # responsive, timeline soon
    WARM = "warm"            # interested, medium timeline
    COLD = "cold"            # unresponsive
    NURTURE = "nurture"      # long timeline, needs education


class TriggerPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"


class TemplateCategory(str, Enum):
    CORE_BUSINESS = "core_business"
    AI_GENERATED = "ai_generated"
    STANDARD = "standard"


class TemplateStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    DELETED = "deleted"


class StrategyType(str, Enum):
    FREE_FORM = "free_form"
    AI_TEMPLATE = "ai_template"
    EXISTING_TEMPLATE = "existing_template"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ──────────────────────────────────────────────────────────────
#  Lead & conversation — owned by the CRM, read here
# ──────────────────────────────────────────────────────────────

class Lead(BaseModel):
    id: str = Field(default_factory=_new_id)
    account_id: str
    full_name: str = ""
    phone_number: str = ""
    current_state: LeadState = LeadState.EXPLORING
    timeline: Optional[str] = None
    budget: Optional[str] = None
    location_preference: Optional[str] = None
    property_type: Optional[str] = None
    buyer_type: Optional[str] = None              # e.g. "first_time", "investor"
    last_activity_at: Optional[datetime] = None
    follow_up_eligible: bool = True
    follow_up_blocked_reason: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_closed(self) -> bool:
        return self.current_state in CLOSED_LEAD_STATES or not self.follow_up_eligible


class ConversationMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    lead_id: str
    sender: MessageSender
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  FollowUpTask — a scheduled unit of work
# ──────────────────────────────────────────────────────────────

class FollowUpTask(BaseModel):
    id: str = Field(default_factory=_new_id)
    lead_id: str
    account_id: str
    scheduled_time: datetime = Field(default_factory=utcnow)
    attempt_count: int = 0
    max_retries: int = 3
    status: TaskStatus = TaskStatus.PENDING
    follow_up_type: Optional[FollowUpType] = None
    sequence_stage: int = 1
    is_final_attempt: bool = False
    last_error: str = ""
    sent_at: Optional[datetime] = None
    template_id: Optional[str] = None
    strategy: Optional[StrategyType] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def can_transition(self, new_status: TaskStatus) -> bool:
        """Terminal states are immutable; nothing returns to pending."""
        if self.is_terminal:
            return new_status == self.status
        if new_status == TaskStatus.PENDING:
            return self.status == TaskStatus.PENDING
        return True


# ──────────────────────────────────────────────────────────────
#  Templates
# ──────────────────────────────────────────────────────────────

class Template(BaseModel):
    id: str = Field(default_factory=_new_id)
    account_id: str
    name: str = ""
    category: TemplateCategory = TemplateCategory.STANDARD
    content: str = ""
    lead_state: str = "default"                  # LeadState value or "default"
    stage_category: str = "generic"              # state_based | generic | final
    usage_count: int = 0
    response_rate: float = 0.0                   # percent, 0–100
    conversion_rate: float = 0.0                 # percent, 0–100
    remote_id: Optional[str] = None              # ID in the remote template registry
    status: TemplateStatus = TemplateStatus.APPROVED
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


class TemplateFilter(BaseModel):
    """Query for Store.list_templates. Bounds are exclusive."""
    account_id: Optional[str] = None
    status: Optional[TemplateStatus] = None
    categories: list[TemplateCategory] = []
    exclude_categories: list[TemplateCategory] = []
    usage_below: Optional[int] = None
    usage_above: Optional[int] = None
    response_rate_below: Optional[float] = None
    created_before: Optional[datetime] = None
    lead_state: Optional[str] = None
    stage_category: Optional[str] = None
    order_by: str = "created_at"                 # created_at | usage_count | response_rate
    descending: bool = False
    limit: Optional[int] = None

    def matches(self, template: Template) -> bool:
        if self.account_id is not None and template.account_id != self.account_id:
            return False
        if self.status is not None and template.status != self.status:
            return False
        if self.categories and template.category not in self.categories:
            return False
        if template.category in self.exclude_categories:
            return False
        if self.usage_below is not None and not template.usage_count < self.usage_below:
            return False
        if self.usage_above is not None and not template.usage_count > self.usage_above:
            return False
        if self.response_rate_below is not None and not template.response_rate < self.response_rate_below:
            return False
        if self.created_before is not None and not template.created_at < self.created_before:
            return False
        if self.lead_state is not None and template.lead_state != self.lead_state:
            return False
        if self.stage_category is not None and template.stage_category != self.stage_category:
            return False
        return True


class RemoteTemplate(BaseModel):
    """Result of registering a template with the messaging platform."""
    id: str
    status: TemplateStatus = TemplateStatus.PENDING


class QuotaCheck(BaseModel):
    allowed: bool
    current_count: int
    limit: int
    remaining_slots: int
    recommendation: str = ""


class EnforcementResult(BaseModel):
    account_id: str
    count_before: int = 0
    count_after: int = 0
    at_limit: bool = False
    near_limit: bool = False
    actions_taken: list[str] = []
    removed_ids: list[str] = []
    recommendations: list[str] = []
    inconsistencies: list[str] = []             # template IDs left behind in the remote registry
    registry_errors: list[str] = []
    error: str = ""


# ──────────────────────────────────────────────────────────────
#  Decision — DecisionEngine output
# ──────────────────────────────────────────────────────────────

class UrgencyTrigger(BaseModel):
    type: str                       # timeline_urgent | budget_assistance | family_discussion_followup
    priority: TriggerPriority
    message: str = ""


class LeadContext(BaseModel):
    current_state: str = LeadState.EXPLORING.value
    concerns: list[str] = []
    interests: list[str] = []
    questions: list[str] = []
    timeline: Optional[str] = None


class FollowUpOption(BaseModel):
    type: FollowUpType
    priority: int
    content: dict[str, Any] = {}
    reasoning: str = ""


class FollowUpTiming(BaseModel):
    scheduled_time: datetime
    days_from_now: int
    reasoning: str = ""


class StrategyInput(BaseModel):
    """The DecisionEngine's verdict for one lead: what to send and when."""
    lead_id: str
    engagement_score: int
    engagement_level: EngagementLevel
    follow_up_type: FollowUpType
    priority: int
    reasoning: str = ""
    options: list[FollowUpOption] = []
    triggers: list[UrgencyTrigger] = []
    context: LeadContext = Field(default_factory=LeadContext)
    timing: FollowUpTiming
    frequency_days: int


# ──────────────────────────────────────────────────────────────
#  Strategy — StrategySelector output
# ──────────────────────────────────────────────────────────────

class Insight(BaseModel):
    message: str
    confidence: float
    source: str = "conversation"


class StrategyDecision(BaseModel):
    type: StrategyType
    reasoning: str = ""
    confidence: float = 0.0
    fallback_chain: list[StrategyType] = []
    insight: Optional[Insight] = None
    emergency: bool = False


class StrategyResult(BaseModel):
    """A StrategyDecision bundled with everything execute() needs."""
    decision: StrategyDecision
    strategy_input: StrategyInput
    lead: Lead
    conversation: list[ConversationMessage] = []
    task: Optional[FollowUpTask] = None

    @property
    def type(self) -> StrategyType:
        return self.decision.type

    @property
    def reasoning(self) -> str:
        return self.decision.reasoning


class MessageArtifact(BaseModel):
    kind: StrategyType
    content: str
    template_id: Optional[str] = None
    template_name: str = ""
    remote_template_id: Optional[str] = None
    language_code: str = "en"
    variables: list[str] = []
    strategy: StrategyDecision
    generation_attempts: int = 0
    fell_back: bool = False

    @property
    def is_template(self) -> bool:
        return self.kind != StrategyType.FREE_FORM


class SendResult(BaseModel):
    success: bool
    message_id: str = ""
    error: str = ""


# ──────────────────────────────────────────────────────────────
#  Tracking & scheduler reporting
# ──────────────────────────────────────────────────────────────

class FollowUpTracking(BaseModel):
    id: str = Field(default_factory=_new_id)
    account_id: str
    lead_id: str
    task_id: str
    template_id: Optional[str] = None
    follow_up_type: Optional[FollowUpType] = None
    strategy: Optional[StrategyType] = None
    sent_at: datetime = Field(default_factory=utcnow)
    response_received: bool = False
    response_time_minutes: Optional[float] = None
    led_to_appointment: bool = False


class CycleStats(BaseModel):
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    dead: int = 0
    duration_ms: float = 0.0
    queue_depth: int = 0
    batch_size: int = 0
    skipped_cycle: bool = False
    task_ids: list[str] = []

    @property
    def failure_rate(self) -> float:
        """Share of attempted sends that failed, counting retries exhausted to dead."""
        failures = self.failed + self.dead
        total = self.processed + failures
        return failures / total if total > 0 else 0.0


class HealthReport(BaseModel):
    status: HealthStatus = HealthStatus.HEALTHY
    issues: list[str] = []
    checked_at: datetime = Field(default_factory=utcnow)
    queue_depth: int = 0
    recent_error_count: int = 0
