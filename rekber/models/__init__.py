from rekber.models.user import Merchant, User
from rekber.models.product import Product
from rekber.models.transaction import TERMINAL_STATUSES, Transaction, TransactionStatus
from rekber.models.chat import ChatMessage, ChatRoom

__all__ = [
    "User",
    "Merchant",
    "Product",
    "Transaction",
    "TransactionStatus",
    "TERMINAL_STATUSES",
    "ChatRoom",
    "ChatMessage",
]
