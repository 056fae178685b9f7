"""Development helpers for populating fake events and registrations."""

from __future__ import annotations

import random
from datetime import timedelta

from faker import Faker

from .capacity import RegistrationCapacityManager
from .crud import create_event
from .database import get_session
from .errors import RegistrationError
from .storage import init_db
from .utils import utcnow

_event_types = [
    "Mixer",
    "Workshop",
    "Meetup",
    "Hack Night",
    "Field Trip",
    "Meet & Greet",
    "Dinner",
    "Panel",
]
_capacity_choices = [None, 5, 10, 20]
_tag_choices = ["social", "tech", "outdoors", "food", "music", "community", "learning"]


def seed_fake_data(
    *,
    event_count: int = 4,
    participants_per_event: int = 8,
    owner_id: str = "seed-owner",
) -> dict[str, int]:
    """Populate the database with synthetic events and registrations.

    Registrations go through the capacity manager, so seeded data honours
    capacity limits and waitlist ordering.
    """
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if participants_per_event < 0:
        raise ValueError("participants_per_event must be >= 0")

    init_db()
    fake = Faker()
    manager = RegistrationCapacityManager()
    stats = {"events": 0, "participants": 0, "registered": 0, "waitlisted": 0, "rejected": 0}

    for _ in range(event_count):
        with get_session() as session:
            start = utcnow() + timedelta(days=random.randint(2, 60))
            event = create_event(
                session,
                owner_id=owner_id,
                title=f"{fake.city()} {random.choice(_event_types)}",
                description=fake.paragraph(nb_sentences=3),
                start_time=start,
                end_time=start + timedelta(hours=random.randint(1, 4)),
                location=fake.address().replace("\n", ", "),
                max_attendees=random.choice(_capacity_choices),
                allow_waitlist=random.random() < 0.6,
                registration_deadline=start - timedelta(days=1),
                tags=random.sample(_tag_choices, k=random.randint(0, 3)),
            )
            event_id = event.id
        stats["events"] += 1

        for _ in range(participants_per_event):
            try:
                result = manager.submit_rsvp(
                    event_id,
                    name=fake.name(),
                    email=fake.unique.email(),
                    phone=fake.numerify("###-###-####"),
                    source="seed",
                )
            except RegistrationError:
                stats["rejected"] += 1
                continue
            stats["participants"] += 1
            stats[result.status.value.lower()] += 1

    return stats
