"""Read-only rate and eligibility lookups against the venue/coach catalog."""
from models import db
from models.venue import Venue
from models.coach import Coach, ServiceMode
from services.errors import InvalidRequest, NotFound


def _as_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def get_venue(venue_id) -> Venue:
    key = _as_id(venue_id)
    venue = db.session.get(Venue, key) if key is not None else None
    if not venue or not venue.is_active:
        raise NotFound("Venue not found")
    return venue


def get_coach(coach_id) -> Coach:
    key = _as_id(coach_id)
    coach = db.session.get(Coach, key) if key is not None else None
    if not coach or not coach.is_active:
        raise NotFound("Coach not found")
    return coach


def venue_rate(venue: Venue, sport: str) -> int:
    if not venue.offers(sport):
        raise InvalidRequest(f"{sport} is not offered at this venue")
    return venue.hourly_rate


def coach_rate(coach: Coach, venue: Venue, sport: str) -> int:
    """Hourly rate of a coach booked at `venue`, after eligibility checks."""
    if not coach.teaches(sport):
        raise InvalidRequest(f"Coach does not offer {sport}")

    if coach.service_mode == ServiceMode.OWN_VENUE:
        if coach.venue_id is None:
            raise InvalidRequest("Coach has no associated venue")
        if coach.venue_id != venue.id:
            raise InvalidRequest("Coach only trains at their own venue")
    elif coach.venue_id != venue.id and not venue.allow_external_coaches:
        raise InvalidRequest("This venue does not allow external coaches")

    return coach.hourly_rate


def charge_for(rate: int, minutes: int) -> int:
    """rate per hour x duration, rounded half-up to the smallest unit."""
    return (2 * rate * minutes + 60) // 120
