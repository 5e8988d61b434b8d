from models.db import db
from models.venue import split_sports
from utils.clock import utcnow


class ServiceMode:
    OWN_VENUE = "OWN_VENUE"
    FREELANCE = "FREELANCE"
    HYBRID = "HYBRID"


class Coach(db.Model):
    __tablename__ = "coaches"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)

    hourly_rate = db.Column(db.Integer, nullable=False, default=0)
    sports = db.Column(db.String(255), nullable=False, default="")
    service_mode = db.Column(db.String(20), nullable=False, default=ServiceMode.OWN_VENUE)

    # Home venue; required for OWN_VENUE coaches
    venue_id = db.Column(db.Integer, db.ForeignKey("venues.id"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def teaches(self, sport: str) -> bool:
        return (sport or "").strip().lower() in split_sports(self.sports)
