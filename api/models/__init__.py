from models.user import User
from models.subscription import SubscriptionType, Subscription, SubscriptionPayment
from models.event import Event, RegularGroup, GroupSession, GroupEnrollment
from models.booking import Booking, BookingTarget, TargetKind
from models.order import Product, Order, OrderItem

__all__ = [
    "User", "SubscriptionType", "Subscription", "SubscriptionPayment",
    "Event", "RegularGroup", "GroupSession", "GroupEnrollment",
    "Booking", "BookingTarget", "TargetKind",
    "Product", "Order", "OrderItem",
]
