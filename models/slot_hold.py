from models.db import db
from utils.clock import utcnow


class HoldState:
    HELD = "HELD"
    COMMITTED = "COMMITTED"


class SlotHold(db.Model):
    __tablename__ = "slot_holds"

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(32), unique=True, nullable=False, index=True)

    # "venue:<id>" or "coach:<id>"
    resource_key = db.Column(db.String(64), nullable=False)
    date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)

    state = db.Column(db.String(20), nullable=False, default=HoldState.HELD)
    expires_at = db.Column(db.DateTime, nullable=True)  # null once committed
    booking_id = db.Column(db.String(32), db.ForeignKey("bookings.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.Index("ix_slot_holds_resource_day", "resource_key", "date"),
    )

    def is_live(self, now) -> bool:
        if self.state == HoldState.COMMITTED:
            return True
        return self.expires_at is not None and self.expires_at > now
