from billo.models.user import User, SubscriptionTier
from billo.models.group import Group, GroupMember, GroupRole
from billo.models.receipt import Receipt, ReceiptItem, ItemAssignment, ReceiptStatus, SplitType
from billo.models.settlement import Settlement, SettlementStatus
from billo.models.usage import AiScanEvent

__all__ = [
    "User", "SubscriptionTier",
    "Group", "GroupMember", "GroupRole",
    "Receipt", "ReceiptItem", "ItemAssignment", "ReceiptStatus", "SplitType",
    "Settlement", "SettlementStatus",
    "AiScanEvent",
]
