"""
Request-scoped access to the services built at startup
"""

from fastapi import Request

from showtime.services.checkin_service import CheckInService
from showtime.services.roster_service import RosterService


def get_roster_service(request: Request) -> RosterService:
    return request.app.state.roster_service


def get_checkin_service(request: Request) -> CheckInService:
    return request.app.state.checkin_service
