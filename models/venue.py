from models.db import db
from utils.clock import utcnow


def split_sports(value: str) -> set:
    return {s.strip().lower() for s in (value or "").split(",") if s.strip()}


class Venue(db.Model):
    __tablename__ = "venues"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    location = db.Column(db.String(160), nullable=True)
    owner_user_id = db.Column(db.String(64), nullable=False, index=True)

    hourly_rate = db.Column(db.Integer, nullable=False, default=0)  # smallest currency unit
    sports = db.Column(db.String(255), nullable=False, default="")  # comma separated
    allow_external_coaches = db.Column(db.Boolean, default=False, nullable=False)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def offers(self, sport: str) -> bool:
        return (sport or "").strip().lower() in split_sports(self.sports)
