from .db import db
from .audit_log import AuditLog
from .venue import Venue
from .coach import Coach, ServiceMode
from .booking import Booking, BookingStatus
from .payment import Payment, PayeeType, PaymentStatus
from .slot_hold import SlotHold, HoldState
from .promo_code import PromoCode, PromoRedemption, DiscountType, Applicability
