"""FastAPI dependencies: service container from the running app."""

from fastapi import Request

from ntpof_auth.state import AppServices


def get_services(request: Request) -> AppServices:
    return request.app.state.services
