from enum import Enum


class MembershipTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(str, Enum):
    """Mirrors Stripe's subscription statuses"""
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"
    PAUSED = "PAUSED"


class CreditTransactionType(str, Enum):
    PURCHASE = "PURCHASE"
    MONTHLY_ALLOCATION = "MONTHLY_ALLOCATION"
    AI_GENERATION = "AI_GENERATION"
    SANDBOX_USAGE = "SANDBOX_USAGE"
    DEPLOYMENT = "DEPLOYMENT"
    TEAM_COLLABORATION = "TEAM_COLLABORATION"
    BONUS = "BONUS"
    REFUND = "REFUND"


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
