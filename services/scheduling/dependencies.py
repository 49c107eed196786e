"""
services/scheduling/dependencies.py
FastAPI dependencies wiring the scheduling facade to a request's DB session.
Tests override the provisioner and the publisher.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.integrations.meeting_links import MeetingLinkProvisioner
from services.notifications.publisher import BookingEventPublisher
from services.scheduling.facade import SchedulingFacade


def get_meeting_link_provisioner() -> MeetingLinkProvisioner:
    return MeetingLinkProvisioner()


def get_event_publisher() -> BookingEventPublisher:
    return BookingEventPublisher()


def get_scheduler(
    db: AsyncSession = Depends(get_db),
    provisioner: MeetingLinkProvisioner = Depends(get_meeting_link_provisioner),
    publisher: BookingEventPublisher = Depends(get_event_publisher),
) -> SchedulingFacade:
    return SchedulingFacade(db, provisioner=provisioner, publisher=publisher)
