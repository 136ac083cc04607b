from ajo.models.payment import PaymentRecord, PaymentType, PaymentStatus
from ajo.models.group import Group, GroupMembership, GroupStatus, MembershipStatus
from ajo.models.ledger import Contribution, ContributionStatus, Transaction
from ajo.models.webhook import WebhookEvent, WebhookState

__all__ = [
    "PaymentRecord", "PaymentType", "PaymentStatus",
    "Group", "GroupMembership", "GroupStatus", "MembershipStatus",
    "Contribution", "ContributionStatus", "Transaction",
    "WebhookEvent", "WebhookState",
]
